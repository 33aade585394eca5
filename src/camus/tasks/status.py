"""Task lifecycle states and the transitions allowed between them.

PENDING -> STAGE -> IN_PROGRESS -> COMPLETED, with FAILED reachable from
STAGE or IN_PROGRESS. COMPLETED and FAILED are terminal.
"""

from __future__ import annotations

import logging
from enum import Enum

from camus.errors import InvalidTransition, ValidationError

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    STAGE = "stage"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskEvent(str, Enum):
    SUBMIT_TOPIC = "submit_topic"
    START_PROGRESS = "start_progress"
    WORKER_COMPLETED = "worker_completed"
    WORKER_FAILED = "worker_failed"


class Trigger(str, Enum):
    """Who is asking for a transition."""

    CLIENT = "client"
    SERVER = "server"
    CALLBACK = "callback"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

# (from, event) -> (to, triggers allowed to fire it)
TRANSITIONS: dict[tuple[TaskStatus, TaskEvent], tuple[TaskStatus, frozenset[Trigger]]] = {
    (TaskStatus.PENDING, TaskEvent.SUBMIT_TOPIC): (
        TaskStatus.STAGE,
        frozenset({Trigger.CLIENT}),
    ),
    (TaskStatus.STAGE, TaskEvent.START_PROGRESS): (
        TaskStatus.IN_PROGRESS,
        frozenset({Trigger.SERVER}),
    ),
    (TaskStatus.IN_PROGRESS, TaskEvent.WORKER_COMPLETED): (
        TaskStatus.COMPLETED,
        frozenset({Trigger.CALLBACK}),
    ),
    (TaskStatus.IN_PROGRESS, TaskEvent.WORKER_FAILED): (
        TaskStatus.FAILED,
        frozenset({Trigger.CALLBACK, Trigger.SERVER}),
    ),
    (TaskStatus.STAGE, TaskEvent.WORKER_FAILED): (
        TaskStatus.FAILED,
        frozenset({Trigger.CALLBACK, Trigger.SERVER}),
    ),
}


def is_terminal(status: TaskStatus | str) -> bool:
    return TaskStatus(status) in TERMINAL_STATUSES


def parse_status(raw: str) -> TaskStatus:
    """Parse a wire status value; unknown values are a validation error."""
    try:
        return TaskStatus(str(raw).strip().lower())
    except ValueError as exc:
        allowed = [status.value for status in TaskStatus]
        raise ValidationError(
            f"Unknown task status: {raw!r}",
            details={"allowed": allowed},
        ) from exc


def next_status(
    current: TaskStatus | str,
    event: TaskEvent,
    *,
    trigger: Trigger | None = None,
) -> TaskStatus:
    """Return the status reached by applying `event` to `current`.

    Raises InvalidTransition when the pair is not in the table, when the task
    is already terminal, or when `trigger` is not allowed to fire the event.
    """
    current_status = TaskStatus(current)
    if current_status in TERMINAL_STATUSES:
        logger.warning(
            "task_transition event=rejected reason=terminal current=%s event=%s",
            current_status.value,
            event.value,
        )
        raise InvalidTransition(
            current_status.value,
            event.value,
            message=f"Task is already {current_status.value}",
        )

    entry = TRANSITIONS.get((current_status, event))
    if entry is None:
        raise InvalidTransition(current_status.value, event.value)

    target, triggers = entry
    if trigger is not None and trigger not in triggers:
        raise InvalidTransition(
            current_status.value,
            target.value,
            message=f"{trigger.value} may not move task from {current_status.value} "
            f"to {target.value}",
        )
    return target


def event_for(current: TaskStatus, requested: TaskStatus) -> TaskEvent | None:
    """Find the event that moves `current` to `requested`, if any."""
    for (source, event), (target, _) in TRANSITIONS.items():
        if source == current and target == requested:
            return event
    return None


def resolve_requested_status(
    current: TaskStatus | str,
    requested: str,
    *,
    trigger: Trigger,
) -> TaskStatus | None:
    """Validate a raw status taken from a request body.

    Returns the new status, or None when the request repeats the current
    status on a non-terminal task (no-op).
    """
    current_status = TaskStatus(current)
    requested_status = parse_status(requested)
    if requested_status == current_status and current_status not in TERMINAL_STATUSES:
        return None

    event = event_for(current_status, requested_status)
    if event is None:
        if current_status in TERMINAL_STATUSES:
            logger.warning(
                "task_transition event=rejected reason=terminal current=%s requested=%s",
                current_status.value,
                requested_status.value,
            )
        raise InvalidTransition(current_status.value, requested_status.value)
    return next_status(current_status, event, trigger=trigger)
