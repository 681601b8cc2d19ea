import logging
import threading
import time
from collections.abc import Callable

from provisioner.db import session_scope
from provisioner.deployment.builder import DeploymentInfo
from provisioner.errors import NotFoundError, OperationCancelled, ProvisionerError
from provisioner.models import CleanupReason, VMState
from provisioner.records import VMRecord, WorkerRegistry
from provisioner.repositories import sync_worker, write_event
from provisioner.services.bootstrap import LaunchResult, RemoteBootstrapLauncher
from provisioner.services.lifecycle import (
    ProvisioningPhase,
    VMLifecycleOrchestrator,
    VMStatus,
)
from provisioner.tasks import BackgroundTaskQueue
from provisioner.templates import DEFAULT_SSH_PORT, FailureHook, FailureStage, WorkerTemplate


logger = logging.getLogger(__name__)


class ProvisioningTimeout(ProvisionerError):
    def __init__(self, *, vm_name: str, timeout_sec: float):
        self.vm_name = vm_name
        self.timeout_sec = timeout_sec
        super().__init__(f"vm {vm_name} not provisioned after {timeout_sec}s")


def build_record(
    template: WorkerTemplate,
    deployment: DeploymentInfo,
    vm_name: str,
    public_address: str | None = None,
    ssh_port: int = DEFAULT_SSH_PORT,
) -> VMRecord:
    return VMRecord(
        name=vm_name,
        resource_group=deployment.resource_group,
        template_name=template.name,
        admin_username=template.admin_username,
        admin_password=template.admin_password,
        public_address=public_address,
        ssh_port=ssh_port,
        deployment_name=deployment.deployment_name,
        state=VMState.PROVISIONING,
    )


def wait_until_provisioned(
    orchestrator: VMLifecycleOrchestrator,
    vm_name: str,
    resource_group: str,
    timeout_sec: float,
    poll_interval_sec: float,
    cancel: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] | None = None,
) -> VMStatus:
    deadline = clock() + timeout_sec
    while True:
        if cancel is not None and cancel.is_set():
            raise OperationCancelled(f"wait for {vm_name} cancelled")
        try:
            status = orchestrator.get_status(vm_name, resource_group)
        except NotFoundError:
            # the deployment has not materialized the machine yet
            status = None
        if status is not None and status.provisioning_phase != ProvisioningPhase.IN_PROGRESS:
            return status
        if clock() >= deadline:
            raise ProvisioningTimeout(vm_name=vm_name, timeout_sec=timeout_sec)
        if sleep is not None:
            sleep(poll_interval_sec)
        elif cancel is not None:
            cancel.wait(poll_interval_sec)
        else:
            time.sleep(poll_interval_sec)


def persist_record(
    record: VMRecord,
    event_type: str | None = None,
    payload: dict | None = None,
    last_error: str | None = None,
) -> None:
    with session_scope() as session:
        sync_worker(session, record, last_error=last_error)
        if event_type:
            write_event(
                session,
                event_type,
                payload or {},
                vm_name=record.name,
                template_name=record.template_name,
            )


class ProvisioningService:
    def __init__(
        self,
        orchestrator: VMLifecycleOrchestrator,
        launcher: RemoteBootstrapLauncher,
        registry: WorkerRegistry,
        queue: BackgroundTaskQueue,
        failure_hook: FailureHook | None = None,
        provision_timeout_sec: float = 1800,
        poll_interval_sec: float = 30,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.orchestrator = orchestrator
        self.launcher = launcher
        self.registry = registry
        self.queue = queue
        self.failure_hook = failure_hook
        self.provision_timeout_sec = provision_timeout_sec
        self.poll_interval_sec = poll_interval_sec
        self.cancel = cancel
        self.sleep = sleep

    def provision(self, template: WorkerTemplate, count: int) -> DeploymentInfo:
        info = self.orchestrator.create_deployment(template, count)
        with session_scope() as session:
            write_event(
                session,
                "deployment.created",
                {
                    "deployment_name": info.deployment_name,
                    "vm_base_name": info.vm_base_name,
                    "count": info.count,
                },
                template_name=template.name,
            )
        for vm_name in info.vm_names:
            self.queue.submit(
                f"provision:{vm_name}",
                lambda vm_name=vm_name: self.provision_vm(template, info, vm_name),
            )
        return info

    def provision_vm(
        self, template: WorkerTemplate, info: DeploymentInfo, vm_name: str
    ) -> LaunchResult | None:
        record = self.registry.add(build_record(template, info, vm_name))
        persist_record(record, "worker.requested", {"deployment_name": info.deployment_name})

        try:
            status = wait_until_provisioned(
                self.orchestrator,
                vm_name,
                info.resource_group,
                timeout_sec=self.provision_timeout_sec,
                poll_interval_sec=self.poll_interval_sec,
                cancel=self.cancel,
                sleep=self.sleep,
            )
            if status.provisioning_phase == ProvisioningPhase.FAILED:
                raise ProvisionerError(f"vm {vm_name} failed to provision")
            address, port = self.orchestrator.resolve_vm_address(vm_name, info.resource_group)
        except OperationCancelled:
            logger.info("provisioning of %s cancelled", vm_name)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.error("provisioning failed vm=%s: %s", vm_name, exc)
            record.transition(VMState.FAILED)
            record.mark_for_deletion(CleanupReason.PROVISIONING_FAILED)
            persist_record(record, "worker.provisioning_failed", {"error": str(exc)}, last_error=str(exc))
            if self.failure_hook is not None:
                self.failure_hook.report_failure(template, str(exc), FailureStage.PROVISIONING)
            return None

        record.public_address = address
        record.ssh_port = port
        record.transition(VMState.RUNNING)
        persist_record(record, "worker.provisioned", {"address": address, "port": port})

        result = self.launcher.launch(record, template)
        persist_record(
            record,
            "worker.launch",
            {
                "phase": result.phase.value,
                "reason": result.reason.value if result.reason else None,
                "visited": [phase.value for phase in result.visited],
            },
            last_error=result.detail,
        )
        return result
