from battlebridge.domain.events import EventType, LIVE_ONLY_EVENT_TYPES, normalize_event_type
from battlebridge.domain.models import (
    ACTIVE_STATUSES,
    ExecutionMode,
    FailureKind,
    SupervisionMode,
    TaskStatus,
    can_transition,
    parse_status,
)

__all__ = [
    'ACTIVE_STATUSES',
    'EventType',
    'ExecutionMode',
    'FailureKind',
    'LIVE_ONLY_EVENT_TYPES',
    'SupervisionMode',
    'TaskStatus',
    'can_transition',
    'normalize_event_type',
    'parse_status',
]
