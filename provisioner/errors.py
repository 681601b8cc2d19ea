RESOURCE_NOT_FOUND = "ResourceNotFound"


class ProvisionerError(RuntimeError):
    pass


class ConfigurationError(ProvisionerError):
    pass


class InvalidLocationError(ConfigurationError):
    def __init__(self, location: str):
        self.location = location
        super().__init__(f"unknown location {location!r}")


class TemplateRenderError(ProvisionerError):
    pass


class DeploymentError(ProvisionerError):
    def __init__(self, *, template_name: str, detail: str):
        self.template_name = template_name
        self.detail = detail
        super().__init__(f"deployment failed template={template_name}: {detail}")


class ProviderError(ProvisionerError):
    def __init__(self, code: str | None, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code or 'ProviderError'}: {message}")


class NotFoundError(ProviderError):
    def __init__(self, message: str):
        super().__init__(RESOURCE_NOT_FOUND, message)


class TransientProviderError(ProviderError):
    pass


class UnrecoverableError(ProvisionerError):
    def __init__(self, *, operation: str, attempts: int, detail: str):
        self.operation = operation
        self.attempts = attempts
        self.detail = detail
        super().__init__(
            f"{operation} failed after {attempts} attempts: {detail}"
        )


class OperationCancelled(ProvisionerError):
    pass


class BootstrapFailure(ProvisionerError):
    reason = "LAUNCH_FAILED"

    def __init__(self, vm_name: str, detail: str):
        self.vm_name = vm_name
        self.detail = detail
        super().__init__(f"bootstrap failed vm={vm_name} reason={self.reason}: {detail}")


class ConnectionFailure(BootstrapFailure):
    reason = "CONN_FAIL"


class AuthFailure(BootstrapFailure):
    reason = "AUTH_FAIL"


class RuntimeMissing(BootstrapFailure):
    reason = "RUNTIME_NOT_FOUND"


class InitScriptFailure(BootstrapFailure):
    reason = "INIT_SCRIPT"


def is_not_found(exc: BaseException) -> bool:
    if isinstance(exc, NotFoundError):
        return True
    code = getattr(exc, "code", None)
    return isinstance(code, str) and code.lower() == RESOURCE_NOT_FOUND.lower()
