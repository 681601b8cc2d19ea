import logging
import re
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any
from urllib.parse import urlparse

from provisioner.catalog import Catalog
from provisioner.clients.provider import ProviderClient
from provisioner.errors import TransientProviderError, UnrecoverableError
from provisioner.retry import ExponentialRetryStrategy, RetryStrategy, run_with_retry
from provisioner.templates import ProviderProfile, WorkerTemplate


logger = logging.getLogger(__name__)

ProviderLoader = Callable[[ProviderProfile], ProviderClient]
FieldCheck = Callable[[Mapping[str, Any]], str | None]

CONFIGURATION_OK = "Success"
PROFILE_MISSING = "Provider profile is incomplete: subscription, tenant, client id and secret are required"
PROFILE_ERROR = "Provider profile could not be verified"

PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 123
_PASSWORD_CLASSES = (r"[a-z]", r"[A-Z]", r"[0-9]", r"[^a-zA-Z0-9]")
_JVM_OPTION = re.compile(r"^-\S+$")


def _text(fields: Mapping[str, Any], key: str) -> str:
    value = fields.get(key)
    return "" if value is None else str(value).strip()


def _parse_int(value: str) -> int | None:
    try:
        return int(value)
    except ValueError:
        return None


def check_executors(fields: Mapping[str, Any]) -> str | None:
    raw = _text(fields, "executors")
    if not raw:
        return "Number of executors is required"
    number = _parse_int(raw)
    if number is None or number <= 0:
        return "Number of executors must be a positive integer"
    return None


def check_retention(fields: Mapping[str, Any]) -> str | None:
    raw = _text(fields, "retention_minutes")
    if not raw:
        return "Retention time is required"
    number = _parse_int(raw)
    if number is None or number < 0:
        return "Retention time must be zero or a positive integer"
    return None


def is_valid_password(password: str) -> bool:
    if not PASSWORD_MIN_LENGTH <= len(password) <= PASSWORD_MAX_LENGTH:
        return False
    classes = sum(1 for pattern in _PASSWORD_CLASSES if re.search(pattern, password))
    return classes >= 3


def check_admin_password(fields: Mapping[str, Any]) -> str | None:
    password = fields.get("admin_password") or ""
    if not str(password).strip():
        return "Admin password is required"
    if not is_valid_password(str(password)):
        return (
            f"Admin password must be {PASSWORD_MIN_LENGTH}-{PASSWORD_MAX_LENGTH} "
            "characters and use three of: lower case, upper case, digits, symbols"
        )
    return None


def is_valid_jvm_options(options: str) -> bool:
    return all(_JVM_OPTION.match(token) for token in options.split())


def check_jvm_options(fields: Mapping[str, Any]) -> str | None:
    options = _text(fields, "jvm_options")
    if not options or is_valid_jvm_options(options):
        return None
    return "JVM options must be whitespace separated flags starting with '-'"


def _is_uri(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme and parsed.netloc)


def check_image_parameters(fields: Mapping[str, Any]) -> str | None:
    image = _text(fields, "image")
    os_type = _text(fields, "os_type")
    reference = [
        _text(fields, key) for key in ("image_publisher", "image_offer", "image_sku")
    ]
    version = _text(fields, "image_version")

    if image and os_type:
        if any(reference):
            return "Image reference is not valid: use either an image URI or publisher/offer/sku, not both"
        if not _is_uri(image):
            return "Image URI is not valid"
        return None
    if all(reference) and version:
        return None
    return "Image reference is not valid: image parameters should not be blank"


class TemplateValidator:
    def __init__(
        self,
        provider_loader: ProviderLoader,
        catalog: Catalog,
        timeout_sec: float = 60,
    ):
        self.provider_loader = provider_loader
        self.catalog = catalog
        self.timeout_sec = timeout_sec

    def check_location(self, fields: Mapping[str, Any]) -> str | None:
        if self.catalog.location_code(_text(fields, "location")) is None:
            return f"Location {_text(fields, 'location')!r} is not a known region"
        return None

    def field_checks(self) -> list[FieldCheck]:
        return [
            check_executors,
            check_retention,
            check_admin_password,
            check_jvm_options,
            check_image_parameters,
            self.check_location,
        ]

    def validate(
        self,
        profile: ProviderProfile,
        fields: Mapping[str, Any],
        fail_fast: bool = False,
    ) -> list[str]:
        findings: list[str] = []
        for check in self.field_checks():
            finding = check(fields)
            if finding:
                findings.append(finding)
                if fail_fast:
                    return findings

        try:
            provider = self.provider_loader(profile)
        except Exception as exc:  # noqa: BLE001
            logger.warning("could not load provider for validation: %s", exc)
            findings.append(f"{PROFILE_ERROR}: {exc}")
            return findings

        findings.extend(self.run_provider_checks(provider, fields))
        return findings

    def validate_template(
        self, profile: ProviderProfile, template: WorkerTemplate, fail_fast: bool = False
    ) -> list[str]:
        return self.validate(profile, template.model_dump(), fail_fast=fail_fast)

    def run_provider_checks(
        self, provider: ProviderClient, fields: Mapping[str, Any]
    ) -> list[str]:
        checks: list[tuple[str, Callable[[], str | None]]] = [
            ("virtual network", lambda: self.check_virtual_network(provider, fields)),
            ("image", lambda: self.check_image(provider, fields)),
        ]
        executor = ThreadPoolExecutor(
            max_workers=len(checks), thread_name_prefix="template-validation"
        )
        findings: list[str] = []
        try:
            futures = [(name, executor.submit(check)) for name, check in checks]
            deadline = time.monotonic() + self.timeout_sec
            for name, future in futures:
                remaining = max(deadline - time.monotonic(), 0)
                try:
                    finding = future.result(timeout=remaining)
                except FutureTimeout:
                    logger.warning("%s check timed out after %ss", name, self.timeout_sec)
                    findings.append(
                        f"Validation of {name} timed out after {self.timeout_sec}s"
                    )
                    continue
                except Exception as exc:  # noqa: BLE001
                    logger.warning("%s check failed: %s", name, exc)
                    findings.append(f"Exception occurred while validating {name}: {exc}")
                    continue
                if finding:
                    findings.append(finding)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        return findings

    def check_virtual_network(
        self, provider: ProviderClient, fields: Mapping[str, Any]
    ) -> str | None:
        network = _text(fields, "virtual_network")
        subnet = _text(fields, "subnet")
        resource_group = _text(fields, "resource_group")
        if not network:
            if subnet:
                return "Virtual network name is required when a subnet is given"
            return None

        match = None
        for candidate in provider.list_virtual_networks():
            if candidate.name.lower() != network.lower():
                continue
            if resource_group and candidate.resource_group.lower() != resource_group.lower():
                continue
            match = candidate
            break
        if match is None:
            return f"Virtual network {network} not found"
        if subnet and not any(s.lower() == subnet.lower() for s in match.subnets):
            return f"Subnet {subnet} not found in virtual network {network}"
        return None

    def check_image(
        self, provider: ProviderClient, fields: Mapping[str, Any]
    ) -> str | None:
        image = _text(fields, "image")
        if image:
            host = urlparse(image).hostname or ""
            if "." not in host:
                return "Image URI is not valid"
            if host.split(".", 1)[0] != _text(fields, "storage_account"):
                return "Image URI is not valid: the image must live in the target storage account"
            return None

        version = _text(fields, "image_version")
        if version.lower() == "latest":
            version = ""
        location = self.catalog.location_code(_text(fields, "location")) or ""
        try:
            info = provider.get_image(
                location,
                _text(fields, "image_publisher"),
                _text(fields, "image_offer"),
                _text(fields, "image_sku"),
                version,
            )
        except Exception as exc:  # noqa: BLE001
            logger.info("image lookup failed: %s", exc)
            return f"Image reference is not valid: {exc}"
        logger.info("resolved image %s/%s/%s version=%s", info.publisher, info.offer, info.sku, info.version)
        return None


def verify_configuration(
    profile: ProviderProfile,
    provider_loader: ProviderLoader,
    strategy: RetryStrategy | None = None,
    sleep: Callable[[float], None] | None = None,
) -> str:
    if not profile.is_complete():
        return PROFILE_MISSING
    strategy = strategy or ExponentialRetryStrategy(max_attempts=3, max_wait_sec=2)
    try:
        provider = provider_loader(profile)
        try:
            run_with_retry(
                provider.list_storage_accounts,
                strategy,
                retry_on=(TransientProviderError,),
                describe="verify configuration",
                sleep=sleep,
            )
        except TransientProviderError as exc:
            raise UnrecoverableError(
                operation="verify configuration",
                attempts=strategy.max_attempts,
                detail=str(exc),
            ) from exc
    except UnrecoverableError as exc:
        logger.error("error validating configuration: %s", exc)
        return f"Failure: exception while validating subscription configuration: {exc}"
    except Exception as exc:  # noqa: BLE001
        logger.error("error validating profile: %s", exc)
        return PROFILE_ERROR
    return CONFIGURATION_OK
