import logging

from provisioner.metrics import metrics
from provisioner.models import CleanupAction, CleanupReason, VMState
from provisioner.records import VMRecord, WorkerRegistry
from provisioner.services.bootstrap import AgentChannels
from provisioner.services.lifecycle import VMLifecycleOrchestrator
from provisioner.services.provisioning import persist_record


logger = logging.getLogger(__name__)


def terminate_record(
    record: VMRecord,
    orchestrator: VMLifecycleOrchestrator,
    registry: WorkerRegistry,
    channels: AgentChannels | None = None,
) -> bool:
    action, reason = record.cleanup
    reason_value = reason.value if reason else None
    record.transition(VMState.TERMINATING)
    persist_record(record, "worker.terminating", {"reason": reason_value})
    try:
        orchestrator.terminate(record.name, record.resource_group)
    except Exception as exc:  # noqa: BLE001
        logger.warning("terminate failed vm=%s, will retry: %s", record.name, exc)
        persist_record(
            record,
            "worker.terminate_retry",
            {"reason": reason_value, "error": str(exc)},
            last_error=f"{reason_value}: terminate failed: {exc}",
        )
        return False

    if channels is not None:
        channels.detach(record.name)
    record.transition(VMState.GONE)
    registry.remove(record.name)
    persist_record(record, "worker.terminated", {"reason": reason_value})
    logger.info("worker %s terminated reason=%s action=%s", record.name, reason_value, action.value)
    return True


def request_termination(
    record: VMRecord, reason: CleanupReason = CleanupReason.MANUAL
) -> CleanupAction:
    record.mark_for_deletion(reason)
    persist_record(record, "worker.terminate_requested", {"reason": reason.value})
    return record.cleanup_action


def reap_once(
    orchestrator: VMLifecycleOrchestrator,
    registry: WorkerRegistry,
    channels: AgentChannels | None = None,
) -> list[str]:
    terminated: list[str] = []
    for record in registry.pending_deletion():
        if terminate_record(record, orchestrator, registry, channels):
            terminated.append(record.name)
        else:
            metrics.inc("terminations_failed_total")
    return terminated
