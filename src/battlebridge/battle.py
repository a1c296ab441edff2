from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import threading
import time
from typing import Callable

from battlebridge.bridge.agent import AgentBridge
from battlebridge.bridge.outcomes import (
    STDOUT,
    Cancelled,
    Completed,
    ConfigurationError,
    Failed,
    RunOutcome,
    RunRequest,
    StreamEvent,
    TimedOut,
    outcome_to_dict,
)
from battlebridge.domain.events import LIVE_ONLY_EVENT_TYPES, EventType, normalize_event_type
from battlebridge.domain.models import (
    ACTIVE_STATUSES,
    ExecutionMode,
    FailureKind,
    SupervisionMode,
    TaskStatus,
    parse_status,
)
from battlebridge.observability import get_logger, set_task_context
from battlebridge.repository import TaskCreateRecord, TaskRepository
from battlebridge.storage.artifacts import ArtifactStore
from battlebridge.streaming import EventBroadcaster

_log = get_logger('battlebridge.battle')


class InputValidationError(ValueError):
    def __init__(self, message: str, *, field: str | None = None, code: str = 'validation_error'):
        super().__init__(message)
        self.message = message
        self.field = field
        self.code = code


class BattleError(RuntimeError):
    code = 'battle_error'

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class BattleConflictError(BattleError):
    code = 'battle_in_progress'


class NotAwaitingApprovalError(BattleError):
    code = 'not_awaiting_approval'


class InvalidTransitionError(BattleError):
    code = 'invalid_transition'


@dataclass(frozen=True)
class CreateTaskInput:
    title: str
    description: str = ''
    priority: int = 0


@dataclass(frozen=True)
class TaskView:
    task_id: str
    title: str
    description: str
    priority: int
    status: TaskStatus
    last_error: str | None
    failure_kind: str | None
    created_at: str | None
    updated_at: str | None
    started_at: str | None
    completed_at: str | None


@dataclass(frozen=True)
class BattleView:
    task_id: str
    title: str
    status: TaskStatus
    phase: str
    active: bool
    awaiting_approval: bool
    supervision_mode: str | None
    attempts: int
    last_error: str | None
    failure_kind: str | None
    battle: dict | None


@dataclass
class _ActiveBattle:
    task_id: str
    supervision_mode: SupervisionMode
    phase: str = 'starting'
    approved: bool = False
    cancel_reason: str | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    approval_event: threading.Event = field(default_factory=threading.Event)
    thread: threading.Thread | None = None


_PHASE_IDLE = 'idle'
_PHASE_PLANNING = 'planning'
_PHASE_AWAITING_APPROVAL = 'awaiting_approval'
_PHASE_EXECUTING = 'executing'
_PHASE_STOPPING = 'stopping'


class BattleStateMachine:
    """Drive tasks through plan, approval and execute against the agent bridge.

    Only this class converts run outcomes into task status. At most one
    battle is registered per task; distinct tasks battle on their own
    worker threads.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        bridge: AgentBridge,
        artifact_store: ArtifactStore | None = None,
        broadcaster: EventBroadcaster | None = None,
        timeout_seconds: float = 1800.0,
        approval_timeout_seconds: float | None = None,
        output_tail_lines: int = 200,
    ):
        self.repository = repository
        self.bridge = bridge
        self.artifact_store = artifact_store
        self.broadcaster = broadcaster or EventBroadcaster()
        self.timeout_seconds = float(timeout_seconds)
        self.approval_timeout_seconds = approval_timeout_seconds
        self.output_tail_lines = max(1, int(output_tail_lines))
        self._lock = threading.RLock()
        self._active: dict[str, _ActiveBattle] = {}

    # Task records

    def create_task(self, payload: CreateTaskInput) -> TaskView:
        title = str(payload.title or '').strip()
        if not title:
            raise InputValidationError('title is required', field='title')
        row = self.repository.create_task_record(
            TaskCreateRecord(
                title=title,
                description=str(payload.description or ''),
                priority=int(payload.priority),
            )
        )
        _log.info('task created task_id=%s priority=%s', row['task_id'], row['priority'])
        return self._to_view(row)

    def list_tasks(self, *, limit: int = 100, status: str | None = None) -> list[TaskView]:
        return [self._to_view(row) for row in self.repository.list_tasks(limit=limit, status=status)]

    def get_task(self, task_id: str) -> TaskView | None:
        row = self.repository.get_task(task_id)
        return self._to_view(row) if row else None

    def list_events(self, task_id: str, *, after_seq: int = 0) -> list[dict]:
        return self.repository.list_events(task_id, after_seq=after_seq)

    def list_battles(self, task_id: str) -> list[dict]:
        self._require_task(task_id)
        if self.artifact_store is None:
            return []
        return self.artifact_store.list_battles(task_id)

    # Battle actions

    def start_battle(
        self,
        task_id: str,
        supervision_mode: SupervisionMode | str = SupervisionMode.HITL,
        *,
        background: bool = False,
    ) -> BattleView:
        mode = self._parse_supervision_mode(supervision_mode)
        with self._lock:
            if task_id in self._active:
                raise BattleConflictError(f'battle already running for {task_id}')
            row = self._require_task(task_id)
            status = parse_status(row['status'])
            if status in ACTIVE_STATUSES:
                raise BattleConflictError(f'battle already running for {task_id}')
            if status != TaskStatus.PENDING:
                raise InvalidTransitionError(f'cannot start a battle for a {status.value} task')
            updated = self.repository.update_task_status_if(
                task_id,
                expected_status=TaskStatus.PENDING.value,
                status=TaskStatus.PLANNING.value,
                reason=None,
            )
            if updated is None:
                raise BattleConflictError(f'battle already running for {task_id}')
            battle = _ActiveBattle(task_id=task_id, supervision_mode=mode, phase=_PHASE_PLANNING)
            self._active[task_id] = battle

        try:
            if self.artifact_store is not None:
                self.artifact_store.begin_battle(task_id, supervision_mode=mode.value)
            self._emit(task_id, EventType.BATTLE_START, {'supervision_mode': mode.value})
        except Exception as exc:
            self._abort_setup(battle, exc)
            raise
        _log.info('battle started task_id=%s supervision=%s', task_id, mode.value)
        return self._launch(battle, self._run_from_plan, background=background)

    def start_next(
        self,
        supervision_mode: SupervisionMode | str = SupervisionMode.HITL,
        *,
        background: bool = False,
    ) -> BattleView | None:
        for row in self.repository.list_tasks(limit=500, status=TaskStatus.PENDING.value):
            if row['task_id'] in self._active:
                continue
            return self.start_battle(row['task_id'], supervision_mode, background=background)
        return None

    def approve(self, task_id: str) -> BattleView:
        with self._lock:
            battle = self._active.get(task_id)
            if battle is None:
                self._require_task(task_id)
            if battle is None or battle.phase != _PHASE_AWAITING_APPROVAL or battle.cancel_event.is_set():
                raise NotAwaitingApprovalError(f'task {task_id} is not awaiting approval')
            battle.approved = True
            battle.phase = _PHASE_EXECUTING
        self._emit(task_id, EventType.APPROVAL_RECEIVED, {})
        battle.approval_event.set()
        _log.info('plan approved task_id=%s', task_id)
        return self.get_status(task_id)

    def cancel(self, task_id: str, *, reason: str | None = None) -> BattleView:
        with self._lock:
            battle = self._active.get(task_id)
            if battle is None:
                self._require_task(task_id)
                raise InvalidTransitionError(f'no active battle for {task_id}', code='battle_not_active')
            battle.cancel_reason = str(reason or '').strip() or 'cancelled by operator'
            battle.phase = _PHASE_STOPPING
        battle.cancel_event.set()
        battle.approval_event.set()
        self._emit(task_id, EventType.BATTLE_CANCEL, {'reason': battle.cancel_reason})
        _log.info('battle cancel requested task_id=%s reason=%s', task_id, battle.cancel_reason)
        return self.get_status(task_id)

    def resume(
        self,
        task_id: str,
        supervision_mode: SupervisionMode | str | None = None,
        *,
        background: bool = False,
    ) -> BattleView:
        with self._lock:
            if task_id in self._active:
                raise BattleConflictError(f'battle already running for {task_id}')
            row = self._require_task(task_id)
            status = parse_status(row['status'])
            if status != TaskStatus.PAUSED:
                raise InvalidTransitionError(f'cannot resume a {status.value} task')
            mode = self._parse_supervision_mode(supervision_mode or self._last_supervision_mode(task_id))
            updated = self.repository.update_task_status_if(
                task_id,
                expected_status=TaskStatus.PAUSED.value,
                status=TaskStatus.IN_PROGRESS.value,
                reason=None,
            )
            if updated is None:
                raise BattleConflictError(f'task {task_id} changed state concurrently')
            # Resuming is an explicit operator action and stands in for plan approval.
            battle = _ActiveBattle(task_id=task_id, supervision_mode=mode, phase=_PHASE_EXECUTING, approved=True)
            self._active[task_id] = battle

        try:
            if self.artifact_store is not None:
                self.artifact_store.begin_battle(task_id, supervision_mode=mode.value, resume=True)
            self._emit(task_id, EventType.BATTLE_RESUME, {'supervision_mode': mode.value})
        except Exception as exc:
            self._abort_setup(battle, exc)
            raise
        _log.info('battle resumed task_id=%s supervision=%s', task_id, mode.value)
        return self._launch(battle, self._run_execute, background=background)

    def retry(self, task_id: str) -> TaskView:
        row = self._require_task(task_id)
        status = parse_status(row['status'])
        if status != TaskStatus.FAILED:
            raise InvalidTransitionError(f'only failed tasks can be retried (status={status.value})')
        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=TaskStatus.FAILED.value,
            status=TaskStatus.PENDING.value,
            reason=None,
        )
        if updated is None:
            raise BattleConflictError(f'task {task_id} changed state concurrently')
        self._emit(task_id, EventType.TASK_RETRY, {'previous_error': row.get('last_error')})
        _log.info('task reset for retry task_id=%s', task_id)
        return self._to_view(updated)

    def get_status(self, task_id: str) -> BattleView:
        row = self._require_task(task_id)
        with self._lock:
            battle = self._active.get(task_id)
            phase = battle.phase if battle is not None else _PHASE_IDLE
            supervision = battle.supervision_mode.value if battle is not None else None
        record = self.artifact_store.current_battle(task_id) if self.artifact_store is not None else None
        if supervision is None and record:
            supervision = record.get('supervision_mode')
        return BattleView(
            task_id=row['task_id'],
            title=row['title'],
            status=parse_status(row['status']),
            phase=phase,
            active=battle is not None,
            awaiting_approval=phase == _PHASE_AWAITING_APPROVAL,
            supervision_mode=supervision,
            attempts=len(record['attempts']) if record else 0,
            last_error=row.get('last_error'),
            failure_kind=row.get('failure_kind'),
            battle=record,
        )

    def list_active(self) -> list[BattleView]:
        with self._lock:
            task_ids = list(self._active.keys())
        views: list[BattleView] = []
        for task_id in task_ids:
            try:
                views.append(self.get_status(task_id))
            except KeyError:
                continue
        return views

    def wait(self, task_id: str, timeout: float | None = None) -> bool:
        """Block until the task's background battle finishes. Returns False on timeout."""
        with self._lock:
            battle = self._active.get(task_id)
        if battle is None or battle.thread is None:
            return True
        battle.thread.join(timeout)
        return not battle.thread.is_alive()

    def shutdown(self, *, timeout: float = 5.0) -> None:
        with self._lock:
            battles = list(self._active.values())
        for battle in battles:
            battle.cancel_reason = battle.cancel_reason or 'service shutdown'
            battle.cancel_event.set()
            battle.approval_event.set()
        deadline = time.monotonic() + max(0.0, float(timeout))
        for battle in battles:
            if battle.thread is not None:
                battle.thread.join(max(0.0, deadline - time.monotonic()))

    def mark_failed_system(self, task_id: str, *, reason: str) -> TaskView:
        _log.warning('mark_failed_system task_id=%s reason=%s', task_id, reason)
        row = self._require_task(task_id)
        status = parse_status(row['status'])
        if status not in ACTIVE_STATUSES:
            return self._to_view(row)
        updated = self.repository.update_task_status_if(
            task_id,
            expected_status=status.value,
            status=TaskStatus.FAILED.value,
            reason=reason,
            failure_kind=FailureKind.SYSTEM_ERROR.value,
        )
        if updated is None:
            return self._to_view(self._require_task(task_id))
        if self.artifact_store is not None:
            self.artifact_store.update_battle(task_id, status='failed', error=reason)
        self._emit(task_id, EventType.SYSTEM_FAILURE, {'reason': reason})
        return self._to_view(updated)

    # Worker

    def _abort_setup(self, battle: _ActiveBattle, exc: Exception) -> None:
        """Unregister a battle whose setup failed before any worker ran, and fail its task."""
        reason_text = str(exc).strip() or exc.__class__.__name__
        _log.error('battle setup failed task_id=%s reason=%s', battle.task_id, reason_text)
        with self._lock:
            if self._active.get(battle.task_id) is battle:
                del self._active[battle.task_id]
        try:
            self.mark_failed_system(battle.task_id, reason=f'setup_error: {reason_text}')
        except Exception:
            _log.exception('battle setup failed to mark task as failed task_id=%s', battle.task_id)

    def _launch(
        self,
        battle: _ActiveBattle,
        body: Callable[[_ActiveBattle], None],
        *,
        background: bool,
    ) -> BattleView:
        if not background:
            self._worker(battle, body)
            return self.get_status(battle.task_id)
        thread = threading.Thread(
            target=self._worker,
            args=(battle, body),
            name=f'battle-{battle.task_id}',
            daemon=True,
        )
        battle.thread = thread
        thread.start()
        return self.get_status(battle.task_id)

    def _worker(self, battle: _ActiveBattle, body: Callable[[_ActiveBattle], None]) -> None:
        set_task_context(task_id=battle.task_id)
        try:
            body(battle)
        except Exception as exc:
            reason_text = str(exc).strip() or exc.__class__.__name__
            _log.exception('battle worker failed task_id=%s reason=%s', battle.task_id, reason_text)
            try:
                self.mark_failed_system(battle.task_id, reason=f'worker_error: {reason_text}')
            except Exception:
                _log.exception('battle worker failed to mark task as failed task_id=%s', battle.task_id)
        finally:
            with self._lock:
                if self._active.get(battle.task_id) is battle:
                    del self._active[battle.task_id]
            set_task_context()

    def _run_from_plan(self, battle: _ActiveBattle) -> None:
        self._emit(battle.task_id, EventType.PLANNING_STARTED, {'supervision_mode': battle.supervision_mode.value})
        outcome = self._run_mode(battle, ExecutionMode.PLAN)
        if outcome is None:
            return
        if isinstance(outcome, Completed):
            self._emit(
                battle.task_id,
                EventType.PLANNING_COMPLETED,
                {'summary': outcome.summary, 'marker_seen': outcome.marker_seen},
            )
        elif isinstance(outcome, Cancelled):
            self._pause(battle, TaskStatus.PLANNING)
            return
        elif isinstance(outcome, (Failed, TimedOut)):
            self._fail(battle, TaskStatus.PLANNING, outcome)
            return
        else:
            raise TypeError(f'unsupported outcome: {outcome!r}')

        if battle.supervision_mode == SupervisionMode.HITL and not self._await_approval(battle):
            self._pause(battle, TaskStatus.PLANNING)
            return

        updated = self.repository.update_task_status_if(
            battle.task_id,
            expected_status=TaskStatus.PLANNING.value,
            status=TaskStatus.IN_PROGRESS.value,
            reason=None,
        )
        if updated is None:
            _log.warning('planning -> in_progress lost to a concurrent transition task_id=%s', battle.task_id)
            return
        self._run_execute(battle)

    def _run_execute(self, battle: _ActiveBattle) -> None:
        with self._lock:
            if not battle.cancel_event.is_set():
                battle.phase = _PHASE_EXECUTING
        self._emit(battle.task_id, EventType.EXECUTION_STARTED, {'supervision_mode': battle.supervision_mode.value})
        outcome = self._run_mode(battle, ExecutionMode.EXECUTE)
        if outcome is None:
            return
        if isinstance(outcome, Completed):
            self._complete(battle, outcome)
        elif isinstance(outcome, Cancelled):
            self._pause(battle, TaskStatus.IN_PROGRESS)
        elif isinstance(outcome, (Failed, TimedOut)):
            self._fail(battle, TaskStatus.IN_PROGRESS, outcome)
        else:
            raise TypeError(f'unsupported outcome: {outcome!r}')

    def _await_approval(self, battle: _ActiveBattle) -> bool:
        with self._lock:
            if battle.cancel_event.is_set():
                return False
            battle.phase = _PHASE_AWAITING_APPROVAL
        if self.artifact_store is not None:
            self.artifact_store.update_battle(battle.task_id, status='awaiting_approval')
        self._emit(battle.task_id, EventType.AWAIT_APPROVAL, {})
        _log.info('awaiting plan approval task_id=%s', battle.task_id)

        signalled = battle.approval_event.wait(self.approval_timeout_seconds)
        if battle.cancel_event.is_set():
            return False
        if not signalled or not battle.approved:
            battle.cancel_reason = battle.cancel_reason or 'approval timed out'
            return False
        if self.artifact_store is not None:
            self.artifact_store.update_battle(battle.task_id, status='running')
        return True

    def _run_mode(self, battle: _ActiveBattle, mode: ExecutionMode) -> RunOutcome | None:
        """Run one agent pass. Returns ``None`` when configuration failed and the task is already failed."""
        task_id = battle.task_id
        from_status = TaskStatus.PLANNING if mode == ExecutionMode.PLAN else TaskStatus.IN_PROGRESS
        attempt = (self.artifact_store.attempt_count(task_id) + 1) if self.artifact_store is not None else None
        set_task_context(task_id=task_id, mode=mode.value, attempt=attempt, phase=battle.phase)
        output: deque[str] = deque(maxlen=self.output_tail_lines)
        marker = self.bridge.marker.strip()
        marker_reported = False

        def on_event(event: StreamEvent) -> None:
            nonlocal marker_reported
            output.append(f'[{event.channel}] {event.line}')
            self._emit(task_id, EventType.AGENT_OUTPUT, {'mode': mode.value, **event.to_dict()}, attempt=attempt)
            if not marker_reported and event.channel == STDOUT and event.line.strip() == marker:
                marker_reported = True
                self._emit(task_id, EventType.COMPLETION_DETECTED, {'mode': mode.value}, attempt=attempt)

        started_at = datetime.now(timezone.utc).isoformat()
        started = time.monotonic()
        try:
            request = RunRequest(
                task_id=task_id,
                execution_mode=mode,
                supervision_mode=battle.supervision_mode,
                timeout_seconds=self.timeout_seconds,
            )
            if battle.cancel_event.is_set():
                outcome: RunOutcome = Cancelled()
            else:
                outcome = self.bridge.execute(
                    request,
                    task=self.repository.get_task(task_id),
                    on_event=on_event,
                    cancel_event=battle.cancel_event,
                )
        except ConfigurationError as exc:
            reason = f'configuration_error: {exc}'
            self._record_attempt(
                task_id, attempt, mode, battle, started_at, started,
                {'kind': 'configuration_error', 'reason': str(exc)}, list(output),
            )
            self._fail_with(battle, from_status, reason=reason, failure_kind=FailureKind.CONFIGURATION_ERROR)
            return None

        self._record_attempt(task_id, attempt, mode, battle, started_at, started, outcome_to_dict(outcome), list(output))
        return outcome

    def _record_attempt(
        self,
        task_id: str,
        attempt: int | None,
        mode: ExecutionMode,
        battle: _ActiveBattle,
        started_at: str,
        started: float,
        outcome: dict,
        output: list[str],
    ) -> None:
        if self.artifact_store is None or attempt is None:
            return
        entry = {
            'attempt': attempt,
            'mode': mode.value,
            'supervision_mode': battle.supervision_mode.value,
            'outcome': outcome,
            'started_at': started_at,
            'ended_at': datetime.now(timezone.utc).isoformat(),
            'elapsed_seconds': round(time.monotonic() - started, 3),
        }
        self.artifact_store.record_attempt(task_id, entry)
        self.artifact_store.write_output_log(task_id, attempt=attempt, mode=mode.value, lines=output)

    # Terminal transitions

    def _complete(self, battle: _ActiveBattle, outcome: Completed) -> None:
        updated = self.repository.update_task_status_if(
            battle.task_id,
            expected_status=TaskStatus.IN_PROGRESS.value,
            status=TaskStatus.COMPLETED.value,
            reason=None,
        )
        if updated is None:
            _log.warning('completion lost to a concurrent transition task_id=%s', battle.task_id)
            return
        if self.artifact_store is not None:
            self.artifact_store.update_battle(battle.task_id, status='completed')
        self._emit(
            battle.task_id,
            EventType.BATTLE_COMPLETE,
            {'summary': outcome.summary, 'marker_seen': outcome.marker_seen},
        )
        _log.info('battle completed task_id=%s marker_seen=%s', battle.task_id, outcome.marker_seen)

    def _fail(self, battle: _ActiveBattle, from_status: TaskStatus, outcome: Failed | TimedOut) -> None:
        if isinstance(outcome, TimedOut):
            self._fail_with(
                battle,
                from_status,
                reason=f'timeout: agent exceeded {self.timeout_seconds:g}s budget (elapsed {outcome.elapsed:.1f}s)',
                failure_kind=FailureKind.TIMEOUT,
                extra={'elapsed': round(outcome.elapsed, 3)},
            )
            return
        self._fail_with(
            battle,
            from_status,
            reason=outcome.reason,
            failure_kind=outcome.failure_kind,
            extra={'exit_code': outcome.exit_code, 'detail': outcome.detail},
        )

    def _fail_with(
        self,
        battle: _ActiveBattle,
        from_status: TaskStatus,
        *,
        reason: str,
        failure_kind: FailureKind,
        extra: dict | None = None,
    ) -> None:
        updated = self.repository.update_task_status_if(
            battle.task_id,
            expected_status=from_status.value,
            status=TaskStatus.FAILED.value,
            reason=reason,
            failure_kind=failure_kind.value,
        )
        if updated is None:
            _log.warning('failure lost to a concurrent transition task_id=%s reason=%s', battle.task_id, reason)
            return
        if self.artifact_store is not None:
            self.artifact_store.update_battle(battle.task_id, status='failed', error=reason)
        payload = {
            'reason': reason,
            'failure_kind': failure_kind.value,
            'retryable': failure_kind.retryable,
            'phase': from_status.value,
        }
        payload.update(extra or {})
        self._emit(battle.task_id, EventType.BATTLE_FAILED, payload)
        _log.warning('battle failed task_id=%s kind=%s reason=%s', battle.task_id, failure_kind.value, reason)

    def _pause(self, battle: _ActiveBattle, from_status: TaskStatus) -> None:
        reason = battle.cancel_reason or 'cancelled'
        updated = self.repository.update_task_status_if(
            battle.task_id,
            expected_status=from_status.value,
            status=TaskStatus.PAUSED.value,
            reason=reason,
            failure_kind=FailureKind.CANCELLED.value,
        )
        if updated is None:
            _log.warning('pause lost to a concurrent transition task_id=%s', battle.task_id)
            return
        if self.artifact_store is not None:
            self.artifact_store.update_battle(battle.task_id, status='paused', error=reason)
        self._emit(battle.task_id, EventType.BATTLE_PAUSE, {'reason': reason, 'phase': from_status.value})
        _log.info('battle paused task_id=%s reason=%s', battle.task_id, reason)

    # Helpers

    def _emit(self, task_id: str, event_type: EventType | str, payload: dict, *, attempt: int | None = None) -> None:
        type_text = normalize_event_type(event_type)
        if type_text in LIVE_ONLY_EVENT_TYPES:
            message = {
                'task_id': task_id,
                'type': type_text,
                'attempt': attempt,
                'payload': payload,
                'created_at': datetime.now(timezone.utc).isoformat(),
            }
        else:
            message = self.repository.append_event(task_id, event_type=type_text, payload=payload, attempt=attempt)
            if self.artifact_store is not None:
                self.artifact_store.append_event(task_id, message)
        self.broadcaster.publish(message)

    def _require_task(self, task_id: str) -> dict:
        row = self.repository.get_task(task_id)
        if row is None:
            raise KeyError(task_id)
        return row

    def _last_supervision_mode(self, task_id: str) -> str:
        if self.artifact_store is not None:
            record = self.artifact_store.current_battle(task_id)
            if record and record.get('supervision_mode'):
                return str(record['supervision_mode'])
        return SupervisionMode.HITL.value

    @staticmethod
    def _parse_supervision_mode(value: SupervisionMode | str) -> SupervisionMode:
        try:
            return SupervisionMode(str(value.value if isinstance(value, SupervisionMode) else value).strip().lower())
        except ValueError as exc:
            raise InputValidationError(
                f'unknown supervision mode: {value!r}',
                field='supervision_mode',
                code='invalid_supervision_mode',
            ) from exc

    @staticmethod
    def _to_view(row: dict) -> TaskView:
        return TaskView(
            task_id=row['task_id'],
            title=row['title'],
            description=row.get('description', ''),
            priority=int(row.get('priority', 0)),
            status=parse_status(row['status']),
            last_error=row.get('last_error'),
            failure_kind=row.get('failure_kind'),
            created_at=row.get('created_at'),
            updated_at=row.get('updated_at'),
            started_at=row.get('started_at'),
            completed_at=row.get('completed_at'),
        )


__all__ = [
    'BattleConflictError',
    'BattleError',
    'BattleStateMachine',
    'BattleView',
    'CreateTaskInput',
    'InputValidationError',
    'InvalidTransitionError',
    'NotAwaitingApprovalError',
    'TaskView',
]
