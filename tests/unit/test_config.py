from __future__ import annotations

from pathlib import Path

from battlebridge.config import load_settings
from battlebridge.domain.models import SupervisionMode

_ENV_KEYS = [
    'BB_DATABASE_URL',
    'BB_ARTIFACT_ROOT',
    'BB_SERVICE_NAME',
    'BB_OTEL_EXPORTER_OTLP_ENDPOINT',
    'BB_DRY_RUN',
    'BB_AGENT_COMMAND',
    'BB_WORKSPACE_PATH',
    'BB_TIMEOUT_MS',
    'BB_KILL_GRACE_MS',
    'BB_POLL_INTERVAL_MS',
    'BB_OUTPUT_TAIL_LINES',
    'BB_DEFAULT_SUPERVISION_MODE',
    'BB_AGENT_ENV',
]


def _clear(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.chdir(tmp_path)

    settings = load_settings()

    assert settings.artifact_root == (tmp_path / '.battlebridge').resolve()
    assert settings.database_url == f"sqlite:///{(settings.artifact_root / 'battlebridge.db').as_posix()}"
    assert settings.agent_command == 'claude'
    assert settings.timeout_ms == 1_800_000
    assert settings.timeout_seconds == 1800.0
    assert settings.kill_grace_seconds == 2.0
    assert settings.poll_interval_seconds == 0.05
    assert settings.default_supervision_mode == SupervisionMode.HITL
    assert settings.dry_run is False
    assert settings.agent_env == {}
    assert settings.otel_endpoint is None


def test_overrides(monkeypatch, tmp_path):
    _clear(monkeypatch)
    monkeypatch.setenv('BB_DATABASE_URL', 'sqlite:///:memory:')
    monkeypatch.setenv('BB_ARTIFACT_ROOT', str(tmp_path / 'art'))
    monkeypatch.setenv('BB_AGENT_COMMAND', 'my-agent --fast')
    monkeypatch.setenv('BB_WORKSPACE_PATH', str(tmp_path))
    monkeypatch.setenv('BB_TIMEOUT_MS', '60000')
    monkeypatch.setenv('BB_KILL_GRACE_MS', '500')
    monkeypatch.setenv('BB_DEFAULT_SUPERVISION_MODE', 'YOLO')
    monkeypatch.setenv('BB_DRY_RUN', 'yes')
    monkeypatch.setenv('BB_AGENT_ENV', '{"ANTHROPIC_MODEL": "x", "": "dropped"}')

    settings = load_settings()

    assert settings.database_url == 'sqlite:///:memory:'
    assert settings.artifact_root == Path(tmp_path / 'art').resolve()
    assert settings.agent_command == 'my-agent --fast'
    assert settings.workspace_path == tmp_path.resolve()
    assert settings.timeout_seconds == 60.0
    assert settings.kill_grace_seconds == 0.5
    assert settings.default_supervision_mode == SupervisionMode.YOLO
    assert settings.dry_run is True
    assert settings.agent_env == {'ANTHROPIC_MODEL': 'x'}


def test_invalid_values_fall_back_or_clamp(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv('BB_TIMEOUT_MS', 'soon')
    monkeypatch.setenv('BB_KILL_GRACE_MS', '1')
    monkeypatch.setenv('BB_DEFAULT_SUPERVISION_MODE', 'autopilot')
    monkeypatch.setenv('BB_AGENT_ENV', '[1, 2]')
    monkeypatch.setenv('BB_AGENT_COMMAND', '   ')

    settings = load_settings()

    assert settings.timeout_ms == 1_800_000
    assert settings.kill_grace_ms == 10
    assert settings.default_supervision_mode == SupervisionMode.HITL
    assert settings.agent_env == {}
    assert settings.agent_command == 'claude'


def test_minimum_timeout_is_enforced(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv('BB_TIMEOUT_MS', '5')
    assert load_settings().timeout_ms == 50
