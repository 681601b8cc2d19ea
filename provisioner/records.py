import threading
from collections.abc import Iterator
from contextlib import contextmanager

from provisioner.models import CleanupAction, CleanupReason, VMState
from provisioner.state_machine import can_transition
from provisioner.templates import DEFAULT_SSH_PORT


GENERIC_REASONS = {CleanupReason.LAUNCH_FAILED}


class VMRecord:
    """One provisioned machine.

    The cleanup action and state are shared between the lifecycle
    orchestrator, the bootstrap launcher and the reaper; every mutation goes
    through the record lock so readers never see an action paired with a
    stale reason.
    """

    def __init__(
        self,
        *,
        name: str,
        resource_group: str,
        template_name: str,
        admin_username: str,
        admin_password: str,
        public_address: str | None = None,
        ssh_port: int = DEFAULT_SSH_PORT,
        deployment_name: str | None = None,
        state: VMState = VMState.PROVISIONING,
    ):
        self.name = name
        self.resource_group = resource_group
        self.template_name = template_name
        self.admin_username = admin_username
        self.admin_password = admin_password
        self.public_address = public_address
        self.ssh_port = ssh_port
        self.deployment_name = deployment_name
        self._state = state
        self._cleanup_action = CleanupAction.NONE
        self._cleanup_reason: CleanupReason | None = None
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return (
            f"VMRecord(name={self.name!r}, resource_group={self.resource_group!r}, "
            f"state={self._state.value}, cleanup={self._cleanup_action.value})"
        )

    @contextmanager
    def exclusive(self) -> Iterator["VMRecord"]:
        with self._lock:
            yield self

    @property
    def state(self) -> VMState:
        with self._lock:
            return self._state

    @property
    def cleanup(self) -> tuple[CleanupAction, CleanupReason | None]:
        with self._lock:
            return self._cleanup_action, self._cleanup_reason

    @property
    def cleanup_action(self) -> CleanupAction:
        return self.cleanup[0]

    @property
    def cleanup_reason(self) -> CleanupReason | None:
        return self.cleanup[1]

    def transition(self, target: VMState) -> bool:
        with self._lock:
            if not can_transition(self._state.value, target.value):
                return False
            self._state = target
            return True

    def mark_for_deletion(self, reason: CleanupReason) -> bool:
        with self._lock:
            if (
                self._cleanup_action == CleanupAction.DELETE
                and self._cleanup_reason is not None
                and self._cleanup_reason not in GENERIC_REASONS
            ):
                return False
            self._cleanup_action = CleanupAction.DELETE
            self._cleanup_reason = reason
            return True

    def retain(self) -> bool:
        with self._lock:
            if self._cleanup_action == CleanupAction.DELETE:
                return False
            self._cleanup_action = CleanupAction.RETAIN
            self._cleanup_reason = None
            return True

    def clear_cleanup_action(self) -> None:
        # only a successful reconnect may lift a pending deletion
        with self._lock:
            self._cleanup_action = CleanupAction.NONE
            self._cleanup_reason = None


class WorkerRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, VMRecord] = {}

    def add(self, record: VMRecord) -> VMRecord:
        with self._lock:
            existing = self._records.get(record.name)
            if existing is not None:
                return existing
            self._records[record.name] = record
            return record

    def get(self, vm_name: str) -> VMRecord | None:
        with self._lock:
            return self._records.get(vm_name)

    def remove(self, vm_name: str) -> VMRecord | None:
        with self._lock:
            return self._records.pop(vm_name, None)

    def all(self) -> list[VMRecord]:
        with self._lock:
            return list(self._records.values())

    def pending_deletion(self) -> list[VMRecord]:
        return [r for r in self.all() if r.cleanup_action == CleanupAction.DELETE]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


registry = WorkerRegistry()
