from __future__ import annotations

import logging

from battlebridge.api import create_app
from battlebridge.battle import BattleStateMachine
from battlebridge.bridge.agent import AgentBridge
from battlebridge.bridge.fake import ScriptedProcessLauncher, dry_run_script
from battlebridge.bridge.process import OsProcessLauncher
from battlebridge.bridge.supervisor import ProcessSupervisor
from battlebridge.config import Settings, load_settings
from battlebridge.db import Database, SqlTaskRepository
from battlebridge.observability import configure_observability
from battlebridge.repository import InMemoryTaskRepository, TaskRepository
from battlebridge.storage.artifacts import ArtifactStore

_log = logging.getLogger(__name__)


def build_repository(settings: Settings) -> TaskRepository:
    try:
        db = Database(settings.database_url)
        db.create_schema()
        return SqlTaskRepository(db)
    except Exception:
        _log.exception('database bootstrap failed; falling back to in-memory repository')
        return InMemoryTaskRepository()


def build_service(settings: Settings, *, repository: TaskRepository | None = None) -> BattleStateMachine:
    launcher = ScriptedProcessLauncher(dry_run_script) if settings.dry_run else OsProcessLauncher()
    supervisor = ProcessSupervisor(
        launcher,
        kill_grace_seconds=settings.kill_grace_seconds,
        poll_interval_seconds=settings.poll_interval_seconds,
    )
    bridge = AgentBridge(
        supervisor,
        command=settings.agent_command,
        cwd=settings.workspace_path,
        env_overrides=settings.agent_env,
    )
    return BattleStateMachine(
        repository=repository or build_repository(settings),
        bridge=bridge,
        artifact_store=ArtifactStore(settings.artifact_root),
        timeout_seconds=settings.timeout_seconds,
        output_tail_lines=settings.output_tail_lines,
    )


def build_app():
    settings = load_settings()
    configure_observability(
        service_name=settings.service_name,
        otlp_endpoint=settings.otel_endpoint,
    )
    if settings.dry_run:
        _log.warning('dry run enabled; agent runs are simulated')
    service = build_service(settings)
    return create_app(service=service, default_supervision_mode=settings.default_supervision_mode)


def run() -> None:
    import uvicorn

    uvicorn.run('battlebridge.main:build_app', factory=True, host='127.0.0.1', port=8000)


if __name__ == '__main__':
    run()
