import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from provisioner.db import SessionLocal
from provisioner.errors import DeploymentError
from provisioner.metrics import metrics
from provisioner.repositories import list_events, list_workers
from provisioner.runtime import Runtime, get_runtime
from provisioner.schemas import (
    EventRead,
    LocationRead,
    ManualTerminateRequest,
    ProvisionRequest,
    ProvisionResponse,
    TemplateRead,
    ValidateTemplateRequest,
    ValidateTemplateResponse,
    WorkerRead,
)
from provisioner.services.reaper import request_termination
from provisioner.templates import WorkerTemplate


logger = logging.getLogger(__name__)
router = APIRouter()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _template_or_404(runtime: Runtime, name: str) -> WorkerTemplate:
    template = runtime.templates.get(name)
    if template is None:
        raise HTTPException(status_code=404, detail="unknown template")
    return template


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/metrics")
def metrics_endpoint() -> dict[str, int]:
    return metrics.snapshot()


@router.get("/v1/workers", response_model=list[WorkerRead])
def get_workers(
    template: str | None = Query(default=None),
    state: str | None = Query(default=None),
    cleanup_action: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> list[WorkerRead]:
    workers = list_workers(
        db, template_name=template, state=state, cleanup_action=cleanup_action
    )
    return [WorkerRead.model_validate(w, from_attributes=True) for w in workers]


@router.get("/v1/workers/{vm_name}/events", response_model=list[EventRead])
def get_worker_events(
    vm_name: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
) -> list[EventRead]:
    events = list_events(db, vm_name=vm_name, limit=limit)
    return [EventRead.model_validate(e, from_attributes=True) for e in events]


@router.post("/v1/workers/{vm_name}/terminate", status_code=202)
def terminate_worker(
    vm_name: str,
    payload: ManualTerminateRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, str]:
    record = runtime.registry.get(vm_name)
    if record is None:
        raise HTTPException(status_code=404, detail="unknown worker")
    reason = payload.reason if payload else ManualTerminateRequest().reason
    action = request_termination(record, reason)
    logger.info("termination requested vm=%s reason=%s", vm_name, reason.value)
    return {"vm_name": vm_name, "cleanup_action": action.value}


@router.get("/v1/templates", response_model=list[TemplateRead])
def get_templates(runtime: Runtime = Depends(get_runtime)) -> list[TemplateRead]:
    result: list[TemplateRead] = []
    for name in sorted(runtime.templates):
        template = runtime.templates[name]
        status = runtime.health.status(name)
        result.append(
            TemplateRead(
                name=template.name,
                description=template.description,
                labels=template.labels,
                location=template.location,
                vm_size=template.vm_size,
                resource_group=template.resource_group,
                verified=status.verified,
                findings=status.findings,
                failures=len(status.failures),
            )
        )
    return result


@router.post("/v1/templates/{name}/validate", response_model=ValidateTemplateResponse)
def validate_template(
    name: str,
    payload: ValidateTemplateRequest | None = None,
    runtime: Runtime = Depends(get_runtime),
) -> ValidateTemplateResponse:
    template = _template_or_404(runtime, name)
    fail_fast = payload.fail_fast if payload else False
    findings = runtime.validator.validate_template(
        runtime.profile, template, fail_fast=fail_fast
    )
    return ValidateTemplateResponse(template=name, valid=not findings, findings=findings)


@router.post("/v1/templates/{name}/provision", response_model=ProvisionResponse)
def provision_template(
    name: str,
    payload: ProvisionRequest,
    runtime: Runtime = Depends(get_runtime),
) -> ProvisionResponse:
    template = _template_or_404(runtime, name)
    try:
        info = runtime.provisioning.provision(template, payload.count)
    except DeploymentError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return ProvisionResponse(
        deployment_name=info.deployment_name,
        vm_base_name=info.vm_base_name,
        count=info.count,
        vm_names=info.vm_names,
    )


@router.get("/v1/locations", response_model=list[LocationRead])
def get_locations(
    live: bool = Query(default=False),
    runtime: Runtime = Depends(get_runtime),
) -> list[LocationRead]:
    if live:
        names = runtime.orchestrator.provider.list_locations()
        return [
            LocationRead(name=name, code=runtime.catalog.location_code(name))
            for name in sorted(names)
        ]
    table = runtime.catalog.locations_for(runtime.profile.cloud)
    return [LocationRead(name=name, code=code) for name, code in sorted(table.items())]


@router.get("/v1/locations/{location}/sizes", response_model=list[str])
def get_vm_sizes(
    location: str,
    live: bool = Query(default=False),
    runtime: Runtime = Depends(get_runtime),
) -> list[str]:
    code = runtime.catalog.location_code(location)
    if code is None:
        raise HTTPException(status_code=404, detail="unknown location")
    if live:
        return sorted(runtime.orchestrator.provider.list_vm_sizes(code))
    return list(runtime.catalog.sizes_for(location))
