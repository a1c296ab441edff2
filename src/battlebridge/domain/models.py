from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = 'pending'
    PLANNING = 'planning'
    IN_PROGRESS = 'in_progress'
    PAUSED = 'paused'
    COMPLETED = 'completed'
    FAILED = 'failed'


class ExecutionMode(str, Enum):
    PLAN = 'plan'
    EXECUTE = 'execute'


class SupervisionMode(str, Enum):
    HITL = 'hitl'
    YOLO = 'yolo'


class FailureKind(str, Enum):
    SPAWN_ERROR = 'spawn_error'
    PROCESS_FAILURE = 'process_failure'
    TIMEOUT = 'timeout'
    CANCELLED = 'cancelled'
    CONFIGURATION_ERROR = 'configuration_error'
    SYSTEM_ERROR = 'system_error'

    @property
    def retryable(self) -> bool:
        return self in {FailureKind.PROCESS_FAILURE, FailureKind.TIMEOUT, FailureKind.CANCELLED}


ACTIVE_STATUSES = frozenset({TaskStatus.PLANNING, TaskStatus.IN_PROGRESS})

_ALLOWED: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.PLANNING},
    TaskStatus.PLANNING: {TaskStatus.IN_PROGRESS, TaskStatus.FAILED, TaskStatus.PAUSED},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.PAUSED},
    TaskStatus.PAUSED: {TaskStatus.IN_PROGRESS},
    # Only the operator retry action leaves failed.
    TaskStatus.FAILED: {TaskStatus.PENDING},
    TaskStatus.COMPLETED: set(),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in _ALLOWED.get(current, set())


def parse_status(value: str | TaskStatus) -> TaskStatus:
    if isinstance(value, TaskStatus):
        return value
    return TaskStatus(str(value or '').strip().lower())


__all__ = [
    'ACTIVE_STATUSES',
    'ExecutionMode',
    'FailureKind',
    'SupervisionMode',
    'TaskStatus',
    'can_transition',
    'parse_status',
]
