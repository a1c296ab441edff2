from __future__ import annotations

from enum import Enum


class EventType(str, Enum):
    AGENT_OUTPUT = 'agent_output'
    APPROVAL_RECEIVED = 'approval_received'
    AWAIT_APPROVAL = 'await_approval'
    BATTLE_CANCEL = 'battle_cancel'
    BATTLE_COMPLETE = 'battle_complete'
    BATTLE_FAILED = 'battle_failed'
    BATTLE_PAUSE = 'battle_pause'
    BATTLE_RESUME = 'battle_resume'
    BATTLE_START = 'battle_start'
    COMPLETION_DETECTED = 'completion_detected'
    EXECUTION_STARTED = 'execution_started'
    PLANNING_COMPLETED = 'planning_completed'
    PLANNING_STARTED = 'planning_started'
    SYSTEM_FAILURE = 'system_failure'
    TASK_RETRY = 'task_retry'


def normalize_event_type(value: str | EventType) -> str:
    if isinstance(value, EventType):
        return value.value
    text = str(value or '').strip().lower()
    if not text:
        raise ValueError('event_type is required')
    return text


# Broadcast to live subscribers only; never appended to the task event log.
LIVE_ONLY_EVENT_TYPES = frozenset({EventType.AGENT_OUTPUT.value})
