from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from provisioner.db import Base


class VMState(str, Enum):
    REQUESTED = "REQUESTED"
    PROVISIONING = "PROVISIONING"
    RUNNING = "RUNNING"
    FAILED = "FAILED"
    STOPPING = "STOPPING"
    STOPPED = "STOPPED"
    DEALLOCATED = "DEALLOCATED"
    TERMINATING = "TERMINATING"
    GONE = "GONE"


class CleanupAction(str, Enum):
    NONE = "NONE"
    RETAIN = "RETAIN"
    DELETE = "DELETE"


class CleanupReason(str, Enum):
    CONN_FAIL = "CONN_FAIL"
    AUTH_FAIL = "AUTH_FAIL"
    RUNTIME_NOT_FOUND = "RUNTIME_NOT_FOUND"
    INIT_SCRIPT = "INIT_SCRIPT"
    LAUNCH_FAILED = "LAUNCH_FAILED"
    VM_GONE = "VM_GONE"
    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    MANUAL = "MANUAL"


class Worker(Base):
    __tablename__ = "workers"

    vm_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    template_name: Mapped[str] = mapped_column(String(64), nullable=False)
    resource_group: Mapped[str] = mapped_column(String(128), nullable=False)
    deployment_name: Mapped[str | None] = mapped_column(String(128))
    public_address: Mapped[str | None] = mapped_column(String(256))
    ssh_port: Mapped[int] = mapped_column(Integer, default=22, nullable=False)
    admin_username: Mapped[str | None] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(
        String(32), default=VMState.REQUESTED.value, nullable=False
    )
    cleanup_action: Mapped[str] = mapped_column(
        String(16), default=CleanupAction.NONE.value, nullable=False
    )
    cleanup_reason: Mapped[str | None] = mapped_column(String(64))

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_error: Mapped[str | None] = mapped_column(Text)


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    vm_name: Mapped[str | None] = mapped_column(String(64), index=True)
    template_name: Mapped[str | None] = mapped_column(String(64))
    event_type: Mapped[str] = mapped_column(String(128), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
