"""Worker status state machine."""

from enum import Enum


class WorkerStatus(str, Enum):
    """Worker lifecycle states."""
    IDLE = "idle"
    BUSY = "busy"
    ERROR = "error"


# Valid status transitions. Removal from the registry is not a status:
# error workers leave through unregister() or the cleanup sweep.
TRANSITIONS: dict[WorkerStatus, list[WorkerStatus]] = {
    WorkerStatus.IDLE: [WorkerStatus.BUSY],  # acquire
    WorkerStatus.BUSY: [WorkerStatus.IDLE, WorkerStatus.ERROR],  # success or failure/timeout
    WorkerStatus.ERROR: [WorkerStatus.IDLE],  # explicit reset
}


def can_transition(old_status: WorkerStatus, new_status: WorkerStatus) -> bool:
    """Whether old_status -> new_status is a legal transition."""
    return new_status in TRANSITIONS.get(old_status, [])
