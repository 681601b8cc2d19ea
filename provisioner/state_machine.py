from provisioner.models import VMState


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    VMState.REQUESTED.value: {VMState.PROVISIONING.value, VMState.FAILED.value},
    VMState.PROVISIONING.value: {VMState.RUNNING.value, VMState.FAILED.value},
    VMState.RUNNING.value: {VMState.STOPPING.value},
    VMState.STOPPING.value: {VMState.STOPPED.value, VMState.DEALLOCATED.value},
    VMState.STOPPED.value: {VMState.RUNNING.value},
    VMState.DEALLOCATED.value: {VMState.RUNNING.value},
    VMState.FAILED.value: set(),
    VMState.TERMINATING.value: {VMState.GONE.value},
    VMState.GONE.value: set(),
}


def can_transition(current: str, target: str) -> bool:
    if current == target:
        return True
    if current == VMState.GONE.value:
        return False
    # forced deletion is allowed from every live state
    if target == VMState.TERMINATING.value:
        return True
    return target in ALLOWED_TRANSITIONS.get(current, set())
