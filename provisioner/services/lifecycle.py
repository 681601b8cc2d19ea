import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar
from urllib.parse import unquote, urlparse

from provisioner.clients.provider import ProviderClient
from provisioner.deployment.builder import DeploymentInfo, DeploymentTemplateBuilder
from provisioner.errors import (
    DeploymentError,
    NotFoundError,
    TransientProviderError,
    UnrecoverableError,
    is_not_found,
)
from provisioner.metrics import metrics
from provisioner.models import VMState
from provisioner.records import VMRecord
from provisioner.retry import (
    ExponentialRetryStrategy,
    FixedRetryStrategy,
    RetryStrategy,
    run_with_retry,
)
from provisioner.tasks import BackgroundTaskQueue
from provisioner.templates import DEFAULT_SSH_PORT, FailureHook, FailureStage, WorkerTemplate


logger = logging.getLogger(__name__)

T = TypeVar("T")

PROVISIONING_PREFIX = "ProvisioningState/"
POWER_PREFIX = "PowerState/"
PROVISIONING_OR_DEPROVISIONING = "PROVISIONING_OR_DEPROVISIONING"

# An ambiguous lookup failure counts as "still there": double provisioning or
# a skipped teardown costs more than one extra delete attempt.
ASSUME_EXISTS_ON_ERROR = True

NIC_SUFFIX = "NIC"
PUBLIC_IP_SUFFIX = "IPName"


class ProvisioningPhase(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    IN_PROGRESS = "IN_PROGRESS"
    FAILED = "FAILED"


class PowerState(str, Enum):
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    STOPPING = "STOPPING"
    DEALLOCATED = "DEALLOCATED"
    UNKNOWN = "UNKNOWN"


NOT_ALIVE_POWER_STATES = {PowerState.STOPPING, PowerState.STOPPED, PowerState.DEALLOCATED}


class VMPresence(str, Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True)
class VMStatus:
    provisioning_phase: ProvisioningPhase
    power_state: PowerState

    @property
    def summary(self) -> str:
        if self.provisioning_phase != ProvisioningPhase.SUCCEEDED:
            return PROVISIONING_OR_DEPROVISIONING
        return self.power_state.value

    @property
    def alive_or_healthy(self) -> bool:
        if self.summary == PROVISIONING_OR_DEPROVISIONING:
            return False
        return self.power_state not in NOT_ALIVE_POWER_STATES


def decode_status(codes: Iterable[str]) -> VMStatus:
    provisioning = ""
    power = ""
    for code in codes:
        if code.startswith(PROVISIONING_PREFIX):
            provisioning = code[len(PROVISIONING_PREFIX):]
        elif code.startswith(POWER_PREFIX):
            power = code[len(POWER_PREFIX):]

    if provisioning.lower() == "succeeded":
        phase = ProvisioningPhase.SUCCEEDED
    elif provisioning.lower() == "failed":
        phase = ProvisioningPhase.FAILED
    else:
        phase = ProvisioningPhase.IN_PROGRESS

    try:
        power_state = PowerState(power.upper())
    except ValueError:
        power_state = PowerState.UNKNOWN
    return VMStatus(provisioning_phase=phase, power_state=power_state)


def nic_name(vm_name: str) -> str:
    return f"{vm_name}{NIC_SUFFIX}"


def public_ip_name(vm_name: str) -> str:
    return f"{vm_name}{PUBLIC_IP_SUFFIX}"


def split_blob_uri(uri: str) -> tuple[str, str, str]:
    parsed = urlparse(uri)
    account = (parsed.hostname or "").split(".")[0]
    container, _, blob = parsed.path.lstrip("/").partition("/")
    if not account or not container or not blob:
        raise ValueError(f"not a blob uri: {uri}")
    return account, container, unquote(blob)


def _last_segment(resource_id: str) -> str:
    return resource_id.rstrip("/").rsplit("/", 1)[-1]


class VMLifecycleOrchestrator:
    def __init__(
        self,
        provider: ProviderClient,
        builder: DeploymentTemplateBuilder,
        cleanup_queue: BackgroundTaskQueue,
        failure_hook: FailureHook | None = None,
        start_strategy: RetryStrategy | None = None,
        provider_strategy: RetryStrategy | None = None,
        cancel: threading.Event | None = None,
        sleep: Callable[[float], None] | None = None,
    ):
        self.provider = provider
        self.builder = builder
        self.cleanup_queue = cleanup_queue
        self.failure_hook = failure_hook
        self.start_strategy = start_strategy or FixedRetryStrategy(
            max_attempts=5, delay_sec=30
        )
        self.provider_strategy = provider_strategy or ExponentialRetryStrategy(
            max_attempts=3, max_wait_sec=2
        )
        self.cancel = cancel
        self.sleep = sleep

    def _call(self, describe: str, fn: Callable[[], T]) -> T:
        try:
            return run_with_retry(
                fn,
                self.provider_strategy,
                cancel=self.cancel,
                retry_on=(TransientProviderError,),
                describe=describe,
                sleep=self.sleep,
            )
        except TransientProviderError as exc:
            raise UnrecoverableError(
                operation=describe,
                attempts=self.provider_strategy.max_attempts,
                detail=str(exc),
            ) from exc

    def _report(self, template: WorkerTemplate, message: str, stage: FailureStage) -> None:
        if self.failure_hook is None:
            return
        try:
            self.failure_hook.report_failure(template, message, stage)
        except Exception:  # noqa: BLE001
            logger.exception("failure hook raised template=%s", template.name)

    def create_deployment(self, template: WorkerTemplate, count: int) -> DeploymentInfo:
        try:
            request = self.builder.render(template, count)
            logger.info(
                "creating deployment %s base=%s count=%s resource_group=%s",
                request.deployment_name,
                request.vm_base_name,
                count,
                template.resource_group,
            )
            self._call(
                f"create resource group {template.resource_group}",
                lambda: self.provider.create_or_update_resource_group(
                    template.resource_group, request.location
                ),
            )
            self._call(
                f"submit deployment {request.deployment_name}",
                lambda: self.provider.create_or_update_deployment(
                    template.resource_group,
                    request.deployment_name,
                    request.descriptor,
                ),
            )
        except Exception as exc:
            logger.exception("deployment failed template=%s", template.name)
            metrics.inc("deployments_failed_total")
            self._report(template, str(exc), FailureStage.PROVISIONING)
            raise DeploymentError(template_name=template.name, detail=str(exc)) from exc

        metrics.inc("deployments_created_total")
        return DeploymentInfo(
            deployment_name=request.deployment_name,
            vm_base_name=request.vm_base_name,
            count=count,
            resource_group=template.resource_group,
        )

    def get_status(self, vm_name: str, resource_group: str) -> VMStatus:
        vm = self._call(
            f"get status {vm_name}",
            lambda: self.provider.get_vm_with_instance_view(resource_group, vm_name),
        )
        status = decode_status(vm.statuses)
        logger.info(
            "vm status name=%s provisioning=%s power=%s",
            vm_name,
            status.provisioning_phase.value,
            status.power_state.value,
        )
        return status

    def is_alive_or_healthy(self, record: VMRecord) -> bool:
        status = self.get_status(record.name, record.resource_group)
        return status.alive_or_healthy

    def start(self, record: VMRecord) -> None:
        run_with_retry(
            lambda: self.provider.power_on(record.resource_group, record.name),
            self.start_strategy,
            cancel=self.cancel,
            describe=f"start {record.name}",
            sleep=self.sleep,
        )
        record.transition(VMState.RUNNING)
        logger.info("started vm %s", record.name)

    def stop(self, record: VMRecord) -> None:
        # the record keeps its state when the power off is rejected
        try:
            self.provider.power_off(record.resource_group, record.name)
        except Exception as exc:  # noqa: BLE001
            logger.info("could not stop vm %s: %s", record.name, exc)
            return
        record.transition(VMState.STOPPING)
        record.transition(VMState.STOPPED)

    def restart(self, record: VMRecord) -> None:
        self.provider.restart(record.resource_group, record.name)
        record.transition(VMState.RUNNING)

    def terminate(self, vm_name: str, resource_group: str) -> None:
        try:
            if not self.exists_vm(vm_name, resource_group):
                logger.info("vm %s already gone, cleaning up leftovers", vm_name)
                return
            disk_uris: list[str] = []
            try:
                vm = self._call(
                    f"get vm {vm_name}",
                    lambda: self.provider.get_vm(resource_group, vm_name),
                )
                if vm.os_disk_uri:
                    disk_uris.append(vm.os_disk_uri)
                logger.info("removing vm %s", vm_name)
                self._call(
                    f"delete vm {vm_name}",
                    lambda: self.provider.delete_vm(resource_group, vm_name),
                )
            except Exception as exc:
                if not is_not_found(exc):
                    raise
                logger.info("vm %s disappeared during delete", vm_name)
            for uri in disk_uris:
                self._delete_disk_blob(resource_group, uri)
            metrics.inc("vms_terminated_total")
        finally:
            self.cleanup_queue.submit(
                f"remove-network:{vm_name}",
                lambda: self.remove_network_identity(vm_name, resource_group),
            )

    def _delete_disk_blob(self, resource_group: str, uri: str) -> None:
        account, container, blob = split_blob_uri(uri)
        logger.info(
            "removing disk blob %s in container %s of storage account %s",
            blob,
            container,
            account,
        )
        try:
            keys = self._call(
                f"list keys {account}",
                lambda: self.provider.get_storage_account_keys(resource_group, account),
            )
            if not keys:
                logger.warning("storage account %s returned no keys", account)
                return
            self._call(
                f"delete blob {blob}",
                lambda: self.provider.delete_blob_if_exists(
                    account, keys[0], container, blob
                ),
            )
        except Exception as exc:
            if not is_not_found(exc):
                raise
            logger.info("disk blob %s already gone", blob)

    def remove_network_identity(self, vm_name: str, resource_group: str) -> None:
        for kind, name, delete in (
            ("network interface", nic_name(vm_name), self.provider.delete_network_interface),
            ("public ip", public_ip_name(vm_name), self.provider.delete_public_ip),
        ):
            try:
                logger.info("removing %s %s", kind, name)
                delete(resource_group, name)
            except Exception as exc:  # noqa: BLE001
                if is_not_found(exc):
                    logger.info("%s %s already deprovisioned", kind, name)
                else:
                    logger.warning("could not remove %s %s: %s", kind, name, exc)

    def probe_vm(self, vm_name: str, resource_group: str) -> VMPresence:
        try:
            self.provider.get_vm(resource_group, vm_name)
        except Exception as exc:  # noqa: BLE001
            if is_not_found(exc):
                logger.info("vm %s does not exist", vm_name)
                return VMPresence.ABSENT
            logger.info("vm %s may exist: %s", vm_name, exc)
            return VMPresence.UNKNOWN
        return VMPresence.PRESENT

    def exists_vm(self, vm_name: str, resource_group: str) -> bool:
        presence = self.probe_vm(vm_name, resource_group)
        if presence == VMPresence.UNKNOWN:
            return ASSUME_EXISTS_ON_ERROR
        return presence == VMPresence.PRESENT

    def count_vms(self) -> int:
        try:
            return len(self.provider.list_vms())
        except Exception as exc:  # noqa: BLE001
            logger.info("could not count vms, assuming none: %s", exc)
            return 0

    def resolve_vm_address(self, vm_name: str, resource_group: str) -> tuple[str, int]:
        vm = self._call(
            f"get vm {vm_name}", lambda: self.provider.get_vm(resource_group, vm_name)
        )
        if not vm.network_interface_ids:
            raise NotFoundError(f"vm {vm_name} has no network interface")
        nic = self._call(
            f"get network interface {vm_name}",
            lambda: self.provider.get_network_interface(
                resource_group, _last_segment(vm.network_interface_ids[0])
            ),
        )
        if not nic.public_ip_ids:
            raise NotFoundError(f"vm {vm_name} has no public ip")
        ip = self._call(
            f"get public ip {vm_name}",
            lambda: self.provider.get_public_ip(
                resource_group, _last_segment(nic.public_ip_ids[0])
            ),
        )
        address = ip.fqdn or ip.ip_address
        if not address:
            raise NotFoundError(f"vm {vm_name} has no public address yet")
        return address, DEFAULT_SSH_PORT
