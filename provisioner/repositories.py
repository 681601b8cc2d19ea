import json
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from provisioner.models import Event, Worker
from provisioner.records import VMRecord


def now_utc() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def write_event(
    session: Session,
    event_type: str,
    payload: dict,
    vm_name: str | None = None,
    template_name: str | None = None,
) -> None:
    session.add(
        Event(
            vm_name=vm_name,
            template_name=template_name,
            event_type=event_type,
            payload_json=json.dumps(payload, sort_keys=True, default=str),
        )
    )


def get_worker(session: Session, vm_name: str) -> Worker | None:
    return session.get(Worker, vm_name)


def list_workers(
    session: Session,
    template_name: str | None = None,
    state: str | None = None,
    cleanup_action: str | None = None,
) -> list[Worker]:
    query = select(Worker)
    if template_name:
        query = query.where(Worker.template_name == template_name)
    if state:
        query = query.where(Worker.state == state)
    if cleanup_action:
        query = query.where(Worker.cleanup_action == cleanup_action)
    return list(session.scalars(query.order_by(Worker.created_at.desc())))


def list_events(
    session: Session, vm_name: str | None = None, limit: int = 50
) -> list[Event]:
    query = select(Event)
    if vm_name:
        query = query.where(Event.vm_name == vm_name)
    return list(session.scalars(query.order_by(Event.id.desc()).limit(limit)))


def sync_worker(
    session: Session, record: VMRecord, last_error: str | None = None
) -> Worker:
    action, reason = record.cleanup
    worker = get_worker(session, record.name)
    if worker is None:
        worker = Worker(
            vm_name=record.name,
            template_name=record.template_name,
            resource_group=record.resource_group,
            created_at=now_utc(),
        )
        session.add(worker)
    worker.deployment_name = record.deployment_name
    worker.public_address = record.public_address
    worker.ssh_port = record.ssh_port
    worker.admin_username = record.admin_username
    worker.state = record.state.value
    worker.cleanup_action = action.value
    worker.cleanup_reason = reason.value if reason else None
    worker.updated_at = now_utc()
    if last_error:
        worker.last_error = last_error
    return worker

