from __future__ import annotations

import threading
import time

import pytest

from battlebridge.battle import (
    BattleConflictError,
    BattleStateMachine,
    CreateTaskInput,
    InputValidationError,
    InvalidTransitionError,
    NotAwaitingApprovalError,
)
from battlebridge.bridge.agent import PLAN_FLAG, SKIP_PERMISSIONS_FLAG, AgentBridge
from battlebridge.bridge.fake import ProcessScript, ScriptStep, ScriptedProcessLauncher
from battlebridge.bridge.outcomes import COMPLETION_MARKER, STDOUT
from battlebridge.bridge.supervisor import ProcessSupervisor
from battlebridge.domain.models import TaskStatus
from battlebridge.repository import InMemoryTaskRepository
from battlebridge.storage.artifacts import ArtifactStore
from conftest import wait_for


def _by_mode(plan: ProcessScript, execute: ProcessScript):
    return lambda argv: plan if PLAN_FLAG in argv else execute


def _machine(tmp_path, script, *, command: str = 'claude', **kwargs):
    launcher = ScriptedProcessLauncher(script)
    supervisor = ProcessSupervisor(launcher, kill_grace_seconds=0.1, poll_interval_seconds=0.01)
    bridge = AgentBridge(supervisor, command=command)
    kwargs.setdefault('timeout_seconds', 5.0)
    machine = BattleStateMachine(
        repository=InMemoryTaskRepository(),
        bridge=bridge,
        artifact_store=ArtifactStore(tmp_path / '.bb'),
        **kwargs,
    )
    return machine, launcher


def _task(machine: BattleStateMachine, title: str = 'Fix login', priority: int = 0) -> str:
    return machine.create_task(CreateTaskInput(title=title, description='make it work', priority=priority)).task_id


def _event_types(machine: BattleStateMachine, task_id: str) -> list[str]:
    return [event['type'] for event in machine.list_events(task_id)]


def _events_of(machine: BattleStateMachine, task_id: str, event_type: str) -> list[dict]:
    return [event for event in machine.list_events(task_id) if event['type'] == event_type]


def test_yolo_battle_runs_plan_then_execute_to_completion(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.COMPLETED
    assert view.active is False
    assert view.phase == 'idle'
    assert view.attempts == 2
    plan_argv, execute_argv = launcher.argvs
    assert PLAN_FLAG in plan_argv and SKIP_PERMISSIONS_FLAG in plan_argv
    assert PLAN_FLAG not in execute_argv and SKIP_PERMISSIONS_FLAG in execute_argv

    types = _event_types(machine, task_id)
    assert types[0] == 'battle_start'
    assert types[-1] == 'battle_complete'
    assert 'await_approval' not in types
    assert types.index('planning_completed') < types.index('execution_started')
    assert types.count('completion_detected') == 2
    assert 'agent_output' not in types

    task = machine.get_task(task_id)
    assert task.started_at is not None
    assert task.completed_at is not None
    assert task.last_error is None


def test_hitl_battle_waits_for_approval_before_execute(tmp_path):
    record_status_at_execute: list[str] = []

    def _script(argv):
        if PLAN_FLAG not in argv:
            record_status_at_execute.append(machine.artifact_store.current_battle(task_id)['status'])
        return ProcessScript.success()

    machine, launcher = _machine(tmp_path, _script)
    task_id = _task(machine)

    machine.start_battle(task_id, 'hitl', background=True)

    assert wait_for(lambda: machine.get_status(task_id).awaiting_approval)
    time.sleep(0.05)
    assert len(launcher.argvs) == 1
    assert PLAN_FLAG in launcher.argvs[0]
    assert SKIP_PERMISSIONS_FLAG not in launcher.argvs[0]
    assert machine.get_task(task_id).status == TaskStatus.PLANNING
    assert [v.task_id for v in machine.list_active()] == [task_id]
    assert wait_for(lambda: machine.get_status(task_id).battle['status'] == 'awaiting_approval')

    machine.approve(task_id)
    assert machine.wait(task_id, 5)

    assert machine.get_task(task_id).status == TaskStatus.COMPLETED
    assert len(launcher.argvs) == 2
    assert PLAN_FLAG not in launcher.argvs[1]
    types = _event_types(machine, task_id)
    assert types.index('await_approval') < types.index('approval_received') < types.index('execution_started')
    assert record_status_at_execute == ['running']
    assert machine.list_battles(task_id)[-1]['status'] == 'completed'


def test_cancel_while_awaiting_approval_pauses_without_executing(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    machine.start_battle(task_id, 'hitl', background=True)
    assert wait_for(lambda: machine.get_status(task_id).awaiting_approval)

    machine.cancel(task_id, reason='changed my mind')
    assert machine.wait(task_id, 5)

    task = machine.get_task(task_id)
    assert task.status == TaskStatus.PAUSED
    assert task.last_error == 'changed my mind'
    assert task.failure_kind == 'cancelled'
    assert len(launcher.argvs) == 1
    with pytest.raises(NotAwaitingApprovalError):
        machine.approve(task_id)


def test_cancel_mid_execute_stops_the_agent_and_pauses(tmp_path):
    machine, launcher = _machine(
        tmp_path,
        _by_mode(ProcessScript.success(), ProcessScript.hanging('editing files...')),
    )
    task_id = _task(machine)
    machine.start_battle(task_id, 'yolo', background=True)
    assert wait_for(lambda: len(launcher.processes) == 2)

    machine.cancel(task_id)
    assert machine.wait(task_id, 5)

    task = machine.get_task(task_id)
    assert task.status == TaskStatus.PAUSED
    assert task.last_error == 'cancelled by operator'
    assert launcher.processes[1].poll() is not None
    pause = _events_of(machine, task_id, 'battle_pause')[-1]
    assert pause['payload']['phase'] == 'in_progress'


def test_resume_runs_execute_and_reuses_the_battle_record(tmp_path):
    scripts = {'execute': ProcessScript.hanging('editing files...')}
    machine, launcher = _machine(
        tmp_path,
        lambda argv: ProcessScript.success() if PLAN_FLAG in argv else scripts['execute'],
    )
    task_id = _task(machine)
    machine.start_battle(task_id, 'yolo', background=True)
    assert wait_for(lambda: len(launcher.processes) == 2)
    machine.cancel(task_id)
    assert machine.wait(task_id, 5)
    assert machine.get_task(task_id).status == TaskStatus.PAUSED

    scripts['execute'] = ProcessScript.success()
    view = machine.resume(task_id)

    assert view.status == TaskStatus.COMPLETED
    assert len(launcher.argvs) == 3
    assert PLAN_FLAG not in launcher.argvs[2]
    assert SKIP_PERMISSIONS_FLAG in launcher.argvs[2]
    battles = machine.list_battles(task_id)
    assert len(battles) == 1
    assert battles[0]['status'] == 'completed'
    assert [a['mode'] for a in battles[0]['attempts']] == ['plan', 'execute', 'execute']
    assert 'battle_resume' in _event_types(machine, task_id)


def test_resume_requires_a_paused_task(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    with pytest.raises(InvalidTransitionError):
        machine.resume(task_id)


def test_plan_failure_fails_the_task_without_execute(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.error())
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.last_error == 'Something went wrong'
    assert view.failure_kind == 'process_failure'
    assert len(launcher.argvs) == 1
    failed = _events_of(machine, task_id, 'battle_failed')[-1]['payload']
    assert failed['exit_code'] == 1
    assert failed['retryable'] is True
    assert failed['phase'] == 'planning'
    assert 'Something went wrong' in failed['detail']


def test_execute_failure_records_reason(tmp_path):
    machine, _ = _machine(tmp_path, _by_mode(ProcessScript.success(), ProcessScript.error('Error: tests failed', exit_code=2)))
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.last_error == 'tests failed'
    assert machine.list_battles(task_id)[0]['error'] == 'tests failed'


def test_timeout_fails_with_a_timeout_reason(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.hanging('thinking...'), timeout_seconds=0.05)
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.failure_kind == 'timeout'
    assert view.last_error.startswith('timeout:')
    payload = _events_of(machine, task_id, 'battle_failed')[-1]['payload']
    assert payload['retryable'] is True
    assert payload['elapsed'] >= 0.05


def test_spawn_error_is_not_retryable(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.missing_binary('claude: not found'))
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.failure_kind == 'spawn_error'
    payload = _events_of(machine, task_id, 'battle_failed')[-1]['payload']
    assert payload['retryable'] is False
    assert payload['exit_code'] is None


def test_configuration_error_fails_without_spawning(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success(), command='   ')
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.failure_kind == 'configuration_error'
    assert view.last_error.startswith('configuration_error:')
    assert launcher.spawned == []


def test_retry_moves_failed_back_to_pending_and_allows_a_new_battle(tmp_path):
    scripts = {'current': ProcessScript.error()}
    machine, _ = _machine(tmp_path, lambda argv: scripts['current'])
    task_id = _task(machine)
    machine.start_battle(task_id, 'yolo')

    retried = machine.retry(task_id)

    assert retried.status == TaskStatus.PENDING
    assert retried.last_error is None
    assert retried.started_at is None
    retry_event = _events_of(machine, task_id, 'task_retry')[-1]
    assert retry_event['payload']['previous_error'] == 'Something went wrong'

    scripts['current'] = ProcessScript.success()
    assert machine.start_battle(task_id, 'yolo').status == TaskStatus.COMPLETED
    assert [b['status'] for b in machine.list_battles(task_id)] == ['failed', 'completed']


def test_retry_rejects_non_failed_tasks(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    with pytest.raises(InvalidTransitionError):
        machine.retry(task_id)


def test_duplicate_start_is_rejected_while_a_battle_is_active(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    machine.start_battle(task_id, 'hitl', background=True)
    assert wait_for(lambda: machine.get_status(task_id).awaiting_approval)

    with pytest.raises(BattleConflictError):
        machine.start_battle(task_id, 'yolo')

    machine.cancel(task_id)
    assert machine.wait(task_id, 5)


def test_start_rejected_for_active_or_terminal_status(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    running = _task(machine, 'running')
    done = _task(machine, 'done')
    machine.repository.update_task_status(running, status='in_progress', reason=None)
    machine.repository.update_task_status(done, status='completed', reason=None)

    with pytest.raises(BattleConflictError) as conflict:
        machine.start_battle(running, 'yolo')
    assert conflict.value.code == 'battle_in_progress'
    with pytest.raises(InvalidTransitionError):
        machine.start_battle(done, 'yolo')
    assert launcher.spawned == []


def test_concurrent_starts_only_one_wins(tmp_path):
    machine, _ = _machine(tmp_path, _by_mode(ProcessScript.success(), ProcessScript.hanging('working')))
    task_id = _task(machine)
    errors: list[Exception] = []
    barrier = threading.Barrier(4)

    def _start() -> None:
        barrier.wait()
        try:
            machine.start_battle(task_id, 'yolo', background=True)
        except BattleConflictError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_start) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(5)

    assert len(errors) == 3
    assert _event_types(machine, task_id).count('battle_start') == 1
    machine.cancel(task_id)
    assert machine.wait(task_id, 5)


def test_approve_and_cancel_require_an_active_battle(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)

    with pytest.raises(NotAwaitingApprovalError):
        machine.approve(task_id)
    with pytest.raises(InvalidTransitionError) as cancel_error:
        machine.cancel(task_id)
    assert cancel_error.value.code == 'battle_not_active'
    with pytest.raises(KeyError):
        machine.approve('task-missing')
    with pytest.raises(KeyError):
        machine.start_battle('task-missing', 'yolo')


def test_input_validation(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)

    with pytest.raises(InputValidationError) as mode_error:
        machine.start_battle(task_id, 'autopilot')
    assert mode_error.value.code == 'invalid_supervision_mode'
    assert mode_error.value.field == 'supervision_mode'
    with pytest.raises(InputValidationError):
        machine.create_task(CreateTaskInput(title='   '))


def test_start_next_picks_lowest_priority_pending_task(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    later = _task(machine, 'later', priority=5)
    first = _task(machine, 'first', priority=1)

    view = machine.start_next('yolo')

    assert view.task_id == first
    assert machine.get_task(later).status == TaskStatus.PENDING
    assert machine.start_next('yolo').task_id == later
    assert machine.start_next('yolo') is None


def test_live_output_is_broadcast_but_not_persisted(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    subscription = machine.broadcaster.subscribe(task_id)

    machine.start_battle(task_id, 'yolo')

    messages = []
    while True:
        message = subscription.get(timeout=0.01)
        if message is None:
            break
        messages.append(message)
    subscription.close()

    outputs = [m for m in messages if m['type'] == 'agent_output']
    assert outputs
    assert outputs[0]['payload']['mode'] == 'plan'
    assert outputs[0]['payload']['line'] == 'Working on task...'
    assert outputs[0]['attempt'] == 1
    assert any(m['type'] == 'battle_complete' for m in messages)
    assert 'agent_output' not in _event_types(machine, task_id)


def test_output_tail_is_written_per_attempt(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)

    machine.start_battle(task_id, 'yolo')

    logs = tmp_path / '.bb' / 'battles' / task_id / 'logs'
    plan_log = (logs / 'attempt-01-plan.log').read_text(encoding='utf-8')
    assert '[stdout] Working on task...' in plan_log
    assert COMPLETION_MARKER in (logs / 'attempt-02-execute.log').read_text(encoding='utf-8')
    battle = machine.list_battles(task_id)[0]
    assert battle['status'] == 'completed'
    assert battle['duration_ms'] is not None
    assert battle['attempts'][1]['outcome']['kind'] == 'completed'


def test_exit_zero_without_marker_still_completes(tmp_path):
    machine, _ = _machine(
        tmp_path,
        _by_mode(ProcessScript.success(), ProcessScript(steps=(ScriptStep(STDOUT, 'did it'),))),
    )
    task_id = _task(machine)

    assert machine.start_battle(task_id, 'yolo').status == TaskStatus.COMPLETED
    payload = _events_of(machine, task_id, 'battle_complete')[-1]['payload']
    assert payload['marker_seen'] is False


def test_marker_before_nonzero_exit_completes(tmp_path):
    execute = ProcessScript(steps=(ScriptStep(STDOUT, 'shipped'), ScriptStep(STDOUT, COMPLETION_MARKER)), exit_code=1)
    machine, _ = _machine(tmp_path, _by_mode(ProcessScript.success(), execute))
    task_id = _task(machine)

    assert machine.start_battle(task_id, 'yolo').status == TaskStatus.COMPLETED
    assert _events_of(machine, task_id, 'battle_complete')[-1]['payload']['summary'] == 'shipped'


def test_approval_timeout_pauses_the_battle(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success(), approval_timeout_seconds=0.05)
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'hitl')

    assert view.status == TaskStatus.PAUSED
    assert view.last_error == 'approval timed out'
    assert len(launcher.argvs) == 1


def test_shutdown_cancels_active_battles(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)
    machine.start_battle(task_id, 'hitl', background=True)
    assert wait_for(lambda: machine.get_status(task_id).awaiting_approval)

    machine.shutdown(timeout=5)

    task = machine.get_task(task_id)
    assert task.status == TaskStatus.PAUSED
    assert task.last_error == 'service shutdown'
    assert machine.list_active() == []


def test_distinct_tasks_battle_concurrently(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    first = _task(machine, 'one')
    second = _task(machine, 'two')

    machine.start_battle(first, 'yolo', background=True)
    machine.start_battle(second, 'yolo', background=True)
    assert machine.wait(first, 5)
    assert machine.wait(second, 5)

    assert machine.get_task(first).status == TaskStatus.COMPLETED
    assert machine.get_task(second).status == TaskStatus.COMPLETED
    assert len(launcher.argvs) == 4


class _ExplodingBridge(AgentBridge):
    def execute(self, request, *, task=None, on_event=None, cancel_event=None):
        raise RuntimeError('bridge exploded')


def test_worker_error_marks_the_task_failed(tmp_path):
    machine = BattleStateMachine(
        repository=InMemoryTaskRepository(),
        bridge=_ExplodingBridge(),
        artifact_store=ArtifactStore(tmp_path / '.bb'),
    )
    task_id = _task(machine)

    view = machine.start_battle(task_id, 'yolo')

    assert view.status == TaskStatus.FAILED
    assert view.failure_kind == 'system_error'
    assert view.last_error == 'worker_error: bridge exploded'
    assert view.active is False
    assert 'system_failure' in _event_types(machine, task_id)


class _FlakyArtifactStore(ArtifactStore):
    def __init__(self, root):
        super().__init__(root)
        self.fail_next = False

    def begin_battle(self, task_id, *, supervision_mode, resume=False):
        if self.fail_next:
            self.fail_next = False
            raise OSError('disk full')
        return super().begin_battle(task_id, supervision_mode=supervision_mode, resume=resume)


def test_failed_start_setup_fails_the_task_and_releases_it(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    store = _FlakyArtifactStore(tmp_path / '.bb')
    machine.artifact_store = store
    task_id = _task(machine)
    store.fail_next = True

    with pytest.raises(OSError, match='disk full'):
        machine.start_battle(task_id, 'yolo')

    task = machine.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_kind == 'system_error'
    assert task.last_error == 'setup_error: disk full'
    assert machine.list_active() == []
    assert launcher.spawned == []
    assert 'system_failure' in _event_types(machine, task_id)

    machine.retry(task_id)
    assert machine.start_battle(task_id, 'yolo').status == TaskStatus.COMPLETED


def test_failed_resume_setup_fails_the_task_and_releases_it(tmp_path):
    machine, launcher = _machine(tmp_path, ProcessScript.success())
    store = _FlakyArtifactStore(tmp_path / '.bb')
    machine.artifact_store = store
    task_id = _task(machine)
    machine.start_battle(task_id, 'hitl', background=True)
    assert wait_for(lambda: machine.get_status(task_id).awaiting_approval)
    machine.cancel(task_id)
    assert machine.wait(task_id, 5)
    assert machine.get_task(task_id).status == TaskStatus.PAUSED
    store.fail_next = True

    with pytest.raises(OSError, match='disk full'):
        machine.resume(task_id)

    task = machine.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.failure_kind == 'system_error'
    assert machine.list_active() == []
    assert len(launcher.spawned) == 1
    assert machine.list_battles(task_id)[-1]['status'] == 'failed'


def test_mark_failed_system_ignores_inactive_tasks(tmp_path):
    machine, _ = _machine(tmp_path, ProcessScript.success())
    task_id = _task(machine)

    view = machine.mark_failed_system(task_id, reason='boom')

    assert view.status == TaskStatus.PENDING
    assert 'system_failure' not in _event_types(machine, task_id)
