from __future__ import annotations

from dataclasses import dataclass, field
import json
import os
from pathlib import Path

from battlebridge.domain.models import SupervisionMode


@dataclass(frozen=True)
class Settings:
    database_url: str
    artifact_root: Path
    service_name: str
    otel_endpoint: str | None
    dry_run: bool
    agent_command: str
    workspace_path: Path
    timeout_ms: int
    kill_grace_ms: int
    poll_interval_ms: int
    default_supervision_mode: SupervisionMode
    output_tail_lines: int
    agent_env: dict[str, str] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def kill_grace_seconds(self) -> float:
        return self.kill_grace_ms / 1000.0

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0


def _env_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_bool(name: str) -> bool:
    return os.getenv(name, '').strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_mapping(name: str) -> dict[str, str]:
    raw = (os.getenv(name, '') or '').strip()
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except ValueError:
        return {}
    if not isinstance(parsed, dict):
        return {}
    return {str(k).strip(): str(v) for k, v in parsed.items() if str(k).strip()}


def load_settings() -> Settings:
    artifact_root = Path(os.getenv('BB_ARTIFACT_ROOT', '.battlebridge')).resolve()
    database_url = os.getenv(
        'BB_DATABASE_URL',
        f"sqlite:///{(artifact_root / 'battlebridge.db').as_posix()}",
    )
    service_name = os.getenv('BB_SERVICE_NAME', 'battlebridge')
    otel_endpoint = os.getenv('BB_OTEL_EXPORTER_OTLP_ENDPOINT')
    agent_command = str(os.getenv('BB_AGENT_COMMAND', 'claude') or 'claude').strip() or 'claude'
    workspace_path = Path(os.getenv('BB_WORKSPACE_PATH', '.')).resolve()
    # Thirty minutes per agent run unless overridden.
    timeout_ms = _env_int('BB_TIMEOUT_MS', 1_800_000, minimum=50)
    kill_grace_ms = _env_int('BB_KILL_GRACE_MS', 2000, minimum=10)
    poll_interval_ms = _env_int('BB_POLL_INTERVAL_MS', 50, minimum=5)
    output_tail_lines = _env_int('BB_OUTPUT_TAIL_LINES', 200, minimum=1)
    raw_mode = str(os.getenv('BB_DEFAULT_SUPERVISION_MODE', 'hitl') or 'hitl').strip().lower()
    try:
        default_supervision_mode = SupervisionMode(raw_mode)
    except ValueError:
        default_supervision_mode = SupervisionMode.HITL
    return Settings(
        database_url=database_url,
        artifact_root=artifact_root,
        service_name=service_name,
        otel_endpoint=otel_endpoint,
        dry_run=_env_bool('BB_DRY_RUN'),
        agent_command=agent_command,
        workspace_path=workspace_path,
        timeout_ms=timeout_ms,
        kill_grace_ms=kill_grace_ms,
        poll_interval_ms=poll_interval_ms,
        default_supervision_mode=default_supervision_mode,
        output_tail_lines=output_tail_lines,
        agent_env=_env_mapping('BB_AGENT_ENV'),
    )


__all__ = ['Settings', 'load_settings']
