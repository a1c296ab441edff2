from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient
import pytest
from starlette.websockets import WebSocketDisconnect

from battlebridge.api import create_app
from battlebridge.battle import BattleStateMachine
from battlebridge.bridge.agent import PLAN_FLAG, AgentBridge
from battlebridge.bridge.fake import ProcessScript, ScriptedProcessLauncher
from battlebridge.bridge.supervisor import ProcessSupervisor
from battlebridge.domain.models import SupervisionMode
from battlebridge.repository import InMemoryTaskRepository
from battlebridge.storage.artifacts import ArtifactStore
from conftest import wait_for


def build_client(
    tmp_path: Path,
    script=None,
    *,
    api_access_token: str | None = None,
    allow_remote_api: bool | None = None,
    default_supervision_mode: SupervisionMode = SupervisionMode.HITL,
    client: tuple[str, int] = ('testclient', 50000),
) -> tuple[TestClient, BattleStateMachine, ScriptedProcessLauncher]:
    launcher = ScriptedProcessLauncher(script or ProcessScript.success())
    supervisor = ProcessSupervisor(launcher, kill_grace_seconds=0.1, poll_interval_seconds=0.01)
    service = BattleStateMachine(
        repository=InMemoryTaskRepository(),
        bridge=AgentBridge(supervisor),
        artifact_store=ArtifactStore(tmp_path / '.bb'),
    )
    app = create_app(
        service=service,
        default_supervision_mode=default_supervision_mode,
        allow_remote_api=allow_remote_api,
        api_access_token=api_access_token,
    )
    return TestClient(app, client=client), service, launcher


def _create(client: TestClient, title: str = 'Fix login', **extra) -> dict:
    resp = client.post('/api/tasks', json={'title': title, 'description': 'make it work', **extra})
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health_and_index(tmp_path):
    client, _, _ = build_client(tmp_path)
    assert client.get('/healthz').json() == {'status': 'ok'}
    assert client.get('/').json()['name'] == 'battlebridge'


def test_task_crud(tmp_path):
    client, _, _ = build_client(tmp_path)
    created = _create(client, priority=4)

    assert created['status'] == 'pending'
    assert created['priority'] == 4
    assert client.get(f"/api/tasks/{created['task_id']}").json() == created
    assert [t['task_id'] for t in client.get('/api/tasks').json()] == [created['task_id']]
    assert client.get('/api/tasks', params={'status': 'completed'}).json() == []
    assert client.get('/api/tasks/task-missing').status_code == 404


def test_create_task_validation_error_payload(tmp_path):
    client, _, _ = build_client(tmp_path)

    resp = client.post('/api/tasks', json={'title': ''})

    assert resp.status_code == 400
    body = resp.json()
    assert body['code'] == 'validation_error'
    assert body['field'] == 'title'


def test_invalid_supervision_mode_is_rejected(tmp_path):
    client, _, _ = build_client(tmp_path)
    task_id = _create(client)['task_id']

    resp = client.post(f'/api/tasks/{task_id}/battle/start', json={'supervision_mode': 'autopilot'})

    assert resp.status_code == 400
    assert resp.json()['field'] == 'supervision_mode'


def test_foreground_yolo_battle_completes(tmp_path):
    client, _, launcher = build_client(tmp_path)
    task_id = _create(client)['task_id']

    resp = client.post(f'/api/tasks/{task_id}/battle/start', json={'supervision_mode': 'yolo', 'background': False})

    assert resp.status_code == 202
    body = resp.json()
    assert body['status'] == 'completed'
    assert body['attempts'] == 2
    assert body['battle']['status'] == 'completed'
    assert len(launcher.argvs) == 2

    events = client.get(f'/api/tasks/{task_id}/events').json()
    assert events[0]['type'] == 'battle_start'
    assert events[-1]['type'] == 'battle_complete'
    later = client.get(f'/api/tasks/{task_id}/events', params={'after_seq': events[-2]['seq']}).json()
    assert [e['type'] for e in later] == ['battle_complete']

    battles = client.get(f'/api/tasks/{task_id}/battles').json()
    assert [a['mode'] for a in battles[0]['attempts']] == ['plan', 'execute']


def test_hitl_battle_through_api(tmp_path):
    client, service, launcher = build_client(tmp_path)
    task_id = _create(client)['task_id']

    started = client.post(f'/api/tasks/{task_id}/battle/start', json={})
    assert started.status_code == 202
    assert started.json()['supervision_mode'] == 'hitl'
    assert wait_for(lambda: client.get(f'/api/tasks/{task_id}/battle').json()['awaiting_approval'])
    assert len(launcher.argvs) == 1 and PLAN_FLAG in launcher.argvs[0]

    active = client.get('/api/battles/active').json()
    assert [b['task_id'] for b in active] == [task_id]

    approved = client.post(f'/api/tasks/{task_id}/battle/approve')
    assert approved.status_code == 200
    assert service.wait(task_id, 5)
    assert client.get(f'/api/tasks/{task_id}').json()['status'] == 'completed'


def test_conflicts_map_to_409(tmp_path):
    client, service, _ = build_client(tmp_path)
    task_id = _create(client)['task_id']

    not_awaiting = client.post(f'/api/tasks/{task_id}/battle/approve')
    assert not_awaiting.status_code == 409
    assert not_awaiting.json()['code'] == 'not_awaiting_approval'
    not_active = client.post(f'/api/tasks/{task_id}/battle/cancel', json={})
    assert not_active.status_code == 409
    assert not_active.json()['code'] == 'battle_not_active'

    client.post(f'/api/tasks/{task_id}/battle/start', json={'supervision_mode': 'hitl'})
    assert wait_for(lambda: client.get(f'/api/tasks/{task_id}/battle').json()['awaiting_approval'])
    duplicate = client.post(f'/api/tasks/{task_id}/battle/start', json={'supervision_mode': 'yolo'})
    assert duplicate.status_code == 409
    assert duplicate.json()['code'] == 'battle_in_progress'

    client.post(f'/api/tasks/{task_id}/battle/cancel', json={'reason': 'later'})
    assert service.wait(task_id, 5)
    paused = client.get(f'/api/tasks/{task_id}').json()
    assert paused['status'] == 'paused'
    assert paused['last_error'] == 'later'

    resumed = client.post(f'/api/tasks/{task_id}/battle/resume', json={'background': False})
    assert resumed.status_code == 202
    assert resumed.json()['status'] == 'completed'


def test_missing_task_routes_return_404(tmp_path):
    client, _, _ = build_client(tmp_path)
    for method, path in [
        ('get', '/api/tasks/task-missing/events'),
        ('get', '/api/tasks/task-missing/battles'),
        ('get', '/api/tasks/task-missing/battle'),
        ('post', '/api/tasks/task-missing/battle/approve'),
        ('post', '/api/tasks/task-missing/retry'),
    ]:
        resp = getattr(client, method)(path)
        assert resp.status_code == 404, path
    assert client.post('/api/tasks/task-missing/battle/start', json={}).status_code == 404


def test_retry_failed_task(tmp_path):
    client, _, _ = build_client(tmp_path, ProcessScript.error())
    task_id = _create(client)['task_id']
    failed = client.post(f'/api/tasks/{task_id}/battle/start', json={'supervision_mode': 'yolo', 'background': False})
    assert failed.json()['status'] == 'failed'
    assert failed.json()['last_error'] == 'Something went wrong'

    retried = client.post(f'/api/tasks/{task_id}/retry')

    assert retried.status_code == 200
    assert retried.json()['status'] == 'pending'
    again = client.post(f'/api/tasks/{task_id}/retry')
    assert again.status_code == 409
    assert again.json()['code'] == 'invalid_transition'


def test_start_next_and_auto_start(tmp_path):
    client, service, _ = build_client(tmp_path, default_supervision_mode=SupervisionMode.YOLO)
    assert client.post('/api/battles/next', json={}).status_code == 404

    queued = _create(client, 'queued', priority=2)
    resp = client.post('/api/battles/next', json={'background': False})
    assert resp.status_code == 202
    assert resp.json()['task_id'] == queued['task_id']
    assert resp.json()['status'] == 'completed'

    auto = _create(client, 'auto', auto_start=True)
    assert service.wait(auto['task_id'], 5)
    assert client.get(f"/api/tasks/{auto['task_id']}").json()['status'] == 'completed'


def test_remote_clients_are_rejected_by_default(tmp_path):
    client, _, _ = build_client(tmp_path, allow_remote_api=False, client=('10.1.2.3', 40000))
    resp = client.get('/api/tasks')
    assert resp.status_code == 403
    assert resp.json()['code'] == 'forbidden'
    assert client.get('/healthz').status_code == 200


def test_api_token_is_enforced(tmp_path):
    client, _, _ = build_client(tmp_path, api_access_token='s3cret')

    assert client.get('/api/tasks').status_code == 401
    assert client.get('/api/tasks', headers={'x-bb-api-token': 's3cret'}).status_code == 200


def test_websocket_streams_live_events(tmp_path):
    client, service, _ = build_client(tmp_path)
    with client:
        with client.websocket_connect('/ws/events?task_id=task-1') as ws:
            assert ws.receive_json() == {'type': 'connected', 'task_id': 'task-1'}
            service.broadcaster.publish({'task_id': 'task-2', 'type': 'battle_start'})
            service.broadcaster.publish({'task_id': 'task-1', 'type': 'agent_output', 'payload': {'line': 'hi'}})
            message = ws.receive_json()
            assert message['type'] == 'agent_output'
            assert message['payload'] == {'line': 'hi'}
    assert wait_for(lambda: service.broadcaster.subscriber_count == 0)


def test_websocket_requires_token_when_configured(tmp_path):
    client, _, _ = build_client(tmp_path, api_access_token='s3cret')
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect('/ws/events') as ws:
            ws.receive_json()
    with client.websocket_connect('/ws/events?token=s3cret') as ws:
        assert ws.receive_json()['type'] == 'connected'
