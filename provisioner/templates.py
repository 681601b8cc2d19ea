from enum import Enum
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


DEFAULT_SSH_PORT = 22


class FailureStage(str, Enum):
    PROVISIONING = "PROVISIONING"
    POST_PROVISIONING = "POST_PROVISIONING"


class FailureHook(Protocol):
    def report_failure(
        self, template: "WorkerTemplate", message: str, stage: FailureStage
    ) -> None: ...


class ProviderProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    subscription_id: str | None = None
    tenant_id: str | None = None
    client_id: str | None = None
    client_secret: str | None = Field(default=None, repr=False)
    cloud: str = "public"

    def is_complete(self) -> bool:
        return all(
            (value or "").strip()
            for value in (
                self.subscription_id,
                self.tenant_id,
                self.client_id,
                self.client_secret,
            )
        )


class WorkerTemplate(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = Field(pattern=r"^[a-z][a-z0-9-]{0,39}$")
    description: str = ""
    labels: str = ""

    resource_group: str
    location: str
    vm_size: str

    image: str = ""
    os_type: str = ""
    image_publisher: str = ""
    image_offer: str = ""
    image_sku: str = ""
    image_version: str = "latest"

    storage_account: str = ""
    virtual_network: str = ""
    subnet: str = ""

    admin_username: str
    admin_password: str = Field(repr=False)

    init_script: str = ""
    execute_init_as_root: bool = False
    discard_on_init_failure: bool = False

    executors: int = 1
    launch_method: str = "ssh"
    retention_minutes: int = 60
    jvm_options: str = ""
    runtime_probe_command: str = "java -fullversion"

    @property
    def uses_custom_image(self) -> bool:
        return bool(self.image.strip())

    @property
    def is_windows(self) -> bool:
        if self.uses_custom_image:
            return self.os_type.strip().lower() == "windows"
        return "windows" in self.image_publisher.lower()


_templates_adapter = TypeAdapter(list[WorkerTemplate])


def load_templates(path: str | Path) -> dict[str, WorkerTemplate]:
    raw = Path(path).read_text(encoding="utf-8")
    templates = _templates_adapter.validate_json(raw)
    return {template.name: template for template in templates}
