from __future__ import annotations

from dataclasses import dataclass
import time
from typing import Union

from battlebridge.domain.models import ExecutionMode, FailureKind, SupervisionMode

COMPLETION_MARKER = '<promise>COMPLETE</promise>'
SPAWN_ERROR_REASON = 'spawn-error'
NONZERO_EXIT_REASON = 'nonzero-exit'

STDOUT = 'stdout'
STDERR = 'stderr'


class ConfigurationError(ValueError):
    """Raised before any process is spawned when a run cannot be configured."""


@dataclass(frozen=True)
class StreamEvent:
    channel: str
    line: str
    timestamp: float

    @classmethod
    def now(cls, channel: str, line: str) -> 'StreamEvent':
        return cls(channel=channel, line=line, timestamp=time.time())

    def to_dict(self) -> dict:
        return {'channel': self.channel, 'line': self.line, 'timestamp': self.timestamp}


@dataclass(frozen=True)
class RunRequest:
    task_id: str
    execution_mode: ExecutionMode
    supervision_mode: SupervisionMode
    timeout_seconds: float
    prompt: str | None = None

    def __post_init__(self) -> None:
        try:
            object.__setattr__(self, 'execution_mode', ExecutionMode(self.execution_mode))
        except ValueError as exc:
            raise ConfigurationError(f'unknown execution mode: {self.execution_mode!r}') from exc
        try:
            object.__setattr__(self, 'supervision_mode', SupervisionMode(self.supervision_mode))
        except ValueError as exc:
            raise ConfigurationError(f'unknown supervision mode: {self.supervision_mode!r}') from exc
        if not str(self.task_id or '').strip():
            raise ConfigurationError('task_id is required')
        if float(self.timeout_seconds) <= 0:
            raise ConfigurationError('timeout_seconds must be positive')


@dataclass(frozen=True)
class Completed:
    summary: str
    marker_seen: bool = True

    kind = 'completed'


@dataclass(frozen=True)
class Failed:
    reason: str
    exit_code: int | None
    detail: str | None = None

    kind = 'failed'

    @property
    def failure_kind(self) -> FailureKind:
        if self.reason == SPAWN_ERROR_REASON and self.exit_code is None:
            return FailureKind.SPAWN_ERROR
        return FailureKind.PROCESS_FAILURE


@dataclass(frozen=True)
class TimedOut:
    elapsed: float

    kind = 'timed_out'


@dataclass(frozen=True)
class Cancelled:
    kind = 'cancelled'


RunOutcome = Union[Completed, Failed, TimedOut, Cancelled]


def outcome_to_dict(outcome: RunOutcome) -> dict:
    if isinstance(outcome, Completed):
        return {'kind': outcome.kind, 'summary': outcome.summary, 'marker_seen': outcome.marker_seen}
    if isinstance(outcome, Failed):
        return {
            'kind': outcome.kind,
            'reason': outcome.reason,
            'exit_code': outcome.exit_code,
            'detail': outcome.detail,
        }
    if isinstance(outcome, TimedOut):
        return {'kind': outcome.kind, 'elapsed': round(outcome.elapsed, 3)}
    if isinstance(outcome, Cancelled):
        return {'kind': outcome.kind}
    raise TypeError(f'unsupported outcome: {outcome!r}')


__all__ = [
    'COMPLETION_MARKER',
    'Cancelled',
    'Completed',
    'ConfigurationError',
    'Failed',
    'NONZERO_EXIT_REASON',
    'RunOutcome',
    'RunRequest',
    'SPAWN_ERROR_REASON',
    'STDERR',
    'STDOUT',
    'StreamEvent',
    'TimedOut',
    'outcome_to_dict',
]
