from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from ipaddress import ip_address
import logging
import os
from pathlib import Path

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from battlebridge.battle import (
    BattleError,
    BattleStateMachine,
    BattleView,
    CreateTaskInput,
    InputValidationError,
    TaskView,
)
from battlebridge.bridge.agent import AgentBridge
from battlebridge.domain.models import SupervisionMode, TaskStatus
from battlebridge.repository import InMemoryTaskRepository, TaskRepository
from battlebridge.storage.artifacts import ArtifactStore

_log = logging.getLogger(__name__)


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default='')
    priority: int = Field(default=0, ge=0, le=10_000)
    auto_start: bool = Field(default=False)
    supervision_mode: SupervisionMode | None = Field(default=None)


class StartBattleRequest(BaseModel):
    supervision_mode: SupervisionMode | None = Field(default=None)
    background: bool = Field(default=True)


class ResumeBattleRequest(BaseModel):
    supervision_mode: SupervisionMode | None = Field(default=None)
    background: bool = Field(default=True)


class CancelBattleRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=4000)


class TaskResponse(BaseModel):
    task_id: str
    title: str
    description: str
    priority: int
    status: str
    last_error: str | None
    failure_kind: str | None
    created_at: str | None
    updated_at: str | None
    started_at: str | None
    completed_at: str | None


class BattleResponse(BaseModel):
    task_id: str
    title: str
    status: str
    phase: str
    active: bool
    awaiting_approval: bool
    supervision_mode: str | None
    attempts: int
    last_error: str | None
    failure_kind: str | None
    battle: dict | None


class EventResponse(BaseModel):
    seq: int
    task_id: str
    type: str
    attempt: int | None
    payload: dict
    created_at: str


class ValidationErrorResponse(BaseModel):
    code: str
    message: str
    field: str | None = None


class AppState:
    def __init__(self, service: BattleStateMachine, default_supervision_mode: SupervisionMode):
        self.service = service
        self.default_supervision_mode = default_supervision_mode


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        title=task.title,
        description=task.description,
        priority=task.priority,
        status=task.status.value,
        last_error=task.last_error,
        failure_kind=task.failure_kind,
        created_at=task.created_at,
        updated_at=task.updated_at,
        started_at=task.started_at,
        completed_at=task.completed_at,
    )


def _to_battle_response(view: BattleView) -> BattleResponse:
    return BattleResponse(
        task_id=view.task_id,
        title=view.title,
        status=view.status.value,
        phase=view.phase,
        active=view.active,
        awaiting_approval=view.awaiting_approval,
        supervision_mode=view.supervision_mode,
        attempts=view.attempts,
        last_error=view.last_error,
        failure_kind=view.failure_kind,
        battle=view.battle,
    )


def create_app(
    *,
    repository: TaskRepository | None = None,
    service: BattleStateMachine | None = None,
    artifact_root: Path | None = None,
    default_supervision_mode: SupervisionMode = SupervisionMode.HITL,
    allow_remote_api: bool | None = None,
    api_access_token: str | None = None,
    api_access_token_header: str = 'x-bb-api-token',
) -> FastAPI:
    if service is None:
        service = BattleStateMachine(
            repository=repository or InMemoryTaskRepository(),
            bridge=AgentBridge(),
            artifact_store=ArtifactStore(artifact_root or (Path.cwd() / '.battlebridge')),
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await run_in_threadpool(app.state.container.service.shutdown)

    app = FastAPI(title='battlebridge api', version='0.1.0', lifespan=lifespan)
    app.state.container = AppState(service=service, default_supervision_mode=default_supervision_mode)

    resolved_allow_remote_api = allow_remote_api
    if resolved_allow_remote_api is None:
        resolved_allow_remote_api = str(os.getenv('BB_API_ALLOW_REMOTE', '')).strip().lower() in {'1', 'true', 'yes', 'on'}
    resolved_api_access_token = api_access_token
    if resolved_api_access_token is None:
        resolved_api_access_token = str(os.getenv('BB_API_TOKEN', '')).strip() or None
    resolved_api_access_token_header = str(
        os.getenv('BB_API_TOKEN_HEADER', api_access_token_header) or api_access_token_header
    ).strip().lower()

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = list(loc)
        if parts and str(parts[0]) in source_prefixes:
            parts = parts[1:]
        if not parts:
            return None
        field = ''
        for part in parts:
            if isinstance(part, int):
                field += f'[{part}]'
                continue
            text = str(part)
            field = f'{field}.{text}' if field else text
        return field or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(BattleError)
    async def handle_battle_error(request: Request, exc: BattleError):  # noqa: ARG001
        return JSONResponse(status_code=409, content=_error_payload(message=exc.message, code=exc.code))

    def get_service() -> BattleStateMachine:
        return app.state.container.service

    def _default_mode(value: SupervisionMode | None) -> SupervisionMode:
        return value or app.state.container.default_supervision_mode

    def _is_loopback_host(host: str | None) -> bool:
        text = str(host or '').strip().lower()
        if not text:
            return False
        if text in {'localhost', 'testclient'}:
            return True
        if text.startswith('::ffff:'):
            text = text[7:]
        try:
            return ip_address(text).is_loopback
        except ValueError:
            return False

    @app.middleware('http')
    async def enforce_api_access_controls(request: Request, call_next):
        if request.url.path.startswith('/api/'):
            client_host = request.client.host if request.client is not None else ''
            if not resolved_allow_remote_api and not _is_loopback_host(client_host):
                return JSONResponse(
                    status_code=403,
                    content=_error_payload(code='forbidden', message='api access denied'),
                )
            if resolved_api_access_token:
                token = request.headers.get(resolved_api_access_token_header)
                if token != resolved_api_access_token:
                    return JSONResponse(
                        status_code=401,
                        content=_error_payload(code='unauthorized', message='invalid api token'),
                    )
        return await call_next(request)

    @app.get('/healthz')
    def healthz() -> dict[str, str]:
        return {'status': 'ok'}

    @app.get('/')
    def index():
        return JSONResponse({'name': 'battlebridge', 'status': 'ok'})

    @app.post('/api/tasks', response_model=TaskResponse, status_code=201)
    def create_task(payload: CreateTaskRequest, service: BattleStateMachine = Depends(get_service)) -> TaskResponse:
        task = service.create_task(
            CreateTaskInput(
                title=payload.title,
                description=payload.description,
                priority=payload.priority,
            )
        )
        if payload.auto_start:
            service.start_battle(task.task_id, _default_mode(payload.supervision_mode), background=True)
            task = service.get_task(task.task_id) or task
        return _to_task_response(task)

    @app.get('/api/tasks', response_model=list[TaskResponse])
    def list_tasks(
        service: BattleStateMachine = Depends(get_service),
        limit: int = Query(default=100, ge=1, le=500),
        status: TaskStatus | None = Query(default=None),
    ) -> list[TaskResponse]:
        rows = service.list_tasks(limit=limit, status=status.value if status else None)
        return [_to_task_response(r) for r in rows]

    @app.get('/api/tasks/{task_id}', response_model=TaskResponse)
    def get_task(task_id: str, service: BattleStateMachine = Depends(get_service)) -> TaskResponse:
        task = service.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail='task not found')
        return _to_task_response(task)

    @app.get('/api/tasks/{task_id}/events', response_model=list[EventResponse])
    def list_events(
        task_id: str,
        service: BattleStateMachine = Depends(get_service),
        after_seq: int = Query(default=0, ge=0),
    ) -> list[EventResponse]:
        try:
            rows = service.list_events(task_id, after_seq=after_seq)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return [
            EventResponse(
                seq=int(row['seq']),
                task_id=str(row['task_id']),
                type=str(row['type']),
                attempt=row.get('attempt'),
                payload=dict(row.get('payload', {})),
                created_at=str(row['created_at']),
            )
            for row in rows
        ]

    @app.get('/api/tasks/{task_id}/battles', response_model=list[dict])
    def list_battles(task_id: str, service: BattleStateMachine = Depends(get_service)) -> list[dict]:
        try:
            return service.list_battles(task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.get('/api/tasks/{task_id}/battle', response_model=BattleResponse)
    def get_battle(task_id: str, service: BattleStateMachine = Depends(get_service)) -> BattleResponse:
        try:
            return _to_battle_response(service.get_status(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/battle/start', response_model=BattleResponse, status_code=202)
    def start_battle(
        task_id: str,
        payload: StartBattleRequest,
        service: BattleStateMachine = Depends(get_service),
    ) -> BattleResponse:
        try:
            view = service.start_battle(task_id, _default_mode(payload.supervision_mode), background=payload.background)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_battle_response(view)

    @app.post('/api/tasks/{task_id}/battle/approve', response_model=BattleResponse)
    def approve_battle(task_id: str, service: BattleStateMachine = Depends(get_service)) -> BattleResponse:
        try:
            return _to_battle_response(service.approve(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/battle/cancel', response_model=BattleResponse)
    def cancel_battle(
        task_id: str,
        payload: CancelBattleRequest | None = None,
        service: BattleStateMachine = Depends(get_service),
    ) -> BattleResponse:
        try:
            return _to_battle_response(service.cancel(task_id, reason=payload.reason if payload else None))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.post('/api/tasks/{task_id}/battle/resume', response_model=BattleResponse, status_code=202)
    def resume_battle(
        task_id: str,
        payload: ResumeBattleRequest,
        service: BattleStateMachine = Depends(get_service),
    ) -> BattleResponse:
        try:
            view = service.resume(task_id, payload.supervision_mode, background=payload.background)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        return _to_battle_response(view)

    @app.post('/api/tasks/{task_id}/retry', response_model=TaskResponse)
    def retry_task(task_id: str, service: BattleStateMachine = Depends(get_service)) -> TaskResponse:
        try:
            return _to_task_response(service.retry(task_id))
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc

    @app.get('/api/battles/active', response_model=list[BattleResponse])
    def list_active_battles(service: BattleStateMachine = Depends(get_service)) -> list[BattleResponse]:
        return [_to_battle_response(view) for view in service.list_active()]

    @app.post('/api/battles/next', response_model=BattleResponse, status_code=202)
    def start_next_battle(
        payload: StartBattleRequest,
        service: BattleStateMachine = Depends(get_service),
    ) -> BattleResponse:
        view = service.start_next(_default_mode(payload.supervision_mode), background=payload.background)
        if view is None:
            raise HTTPException(status_code=404, detail='no pending task')
        return _to_battle_response(view)

    @app.websocket('/ws/events')
    async def stream_events(websocket: WebSocket, task_id: str | None = None):
        if resolved_api_access_token:
            token = websocket.headers.get(resolved_api_access_token_header) or websocket.query_params.get('token')
            if token != resolved_api_access_token:
                await websocket.close(code=1008)
                return
        subscription = get_service().broadcaster.subscribe(task_id)
        await websocket.accept()

        async def _forward() -> None:
            while True:
                message = await run_in_threadpool(subscription.get, 0.5)
                if message is not None:
                    await websocket.send_json(jsonable_encoder(message))

        sender: asyncio.Task | None = None
        try:
            await websocket.send_json({'type': 'connected', 'task_id': task_id})
            sender = asyncio.create_task(_forward())
            while True:
                incoming = await websocket.receive()
                if incoming.get('type') == 'websocket.disconnect':
                    break
        finally:
            subscription.close()
            if sender is not None:
                sender.cancel()
                with suppress(asyncio.CancelledError):
                    try:
                        await sender
                    except Exception:
                        _log.debug('live stream sender stopped task_id=%s', task_id, exc_info=True)

    return app


__all__ = ['create_app']
