from datetime import datetime

from pydantic import BaseModel, Field

from provisioner.models import CleanupReason


class WorkerRead(BaseModel):
    vm_name: str
    template_name: str
    resource_group: str
    deployment_name: str | None
    public_address: str | None
    ssh_port: int
    state: str
    cleanup_action: str
    cleanup_reason: str | None
    created_at: datetime
    updated_at: datetime
    last_error: str | None


class TemplateRead(BaseModel):
    name: str
    description: str
    labels: str
    location: str
    vm_size: str
    resource_group: str
    verified: bool | None
    findings: list[str]
    failures: int


class ValidateTemplateRequest(BaseModel):
    fail_fast: bool = False


class ValidateTemplateResponse(BaseModel):
    template: str
    valid: bool
    findings: list[str]


class ProvisionRequest(BaseModel):
    count: int = Field(default=1, ge=1, le=100)


class ProvisionResponse(BaseModel):
    deployment_name: str
    vm_base_name: str
    count: int
    vm_names: list[str]


class ManualTerminateRequest(BaseModel):
    reason: CleanupReason = CleanupReason.MANUAL


class EventRead(BaseModel):
    id: int
    timestamp: datetime
    vm_name: str | None
    template_name: str | None
    event_type: str
    payload_json: str


class LocationRead(BaseModel):
    name: str
    code: str | None
