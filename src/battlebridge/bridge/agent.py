from __future__ import annotations

import os
from pathlib import Path
import shlex
import threading
from typing import Callable

from battlebridge.bridge.classifier import OutputClassifier
from battlebridge.bridge.outcomes import (
    COMPLETION_MARKER,
    ConfigurationError,
    RunOutcome,
    RunRequest,
    StreamEvent,
)
from battlebridge.bridge.prompting import build_task_prompt
from battlebridge.bridge.supervisor import ProcessSupervisor
from battlebridge.domain.models import ExecutionMode, SupervisionMode
from battlebridge.observability import get_logger, get_tracer

_log = get_logger('battlebridge.bridge.agent')

PLAN_FLAG = '--plan'
SKIP_PERMISSIONS_FLAG = '--dangerously-skip-permissions'
PRINT_FLAG = '--print'


def split_command(value: str | None) -> list[str]:
    text = str(value or '').strip()
    if not text:
        return []
    try:
        return [str(v) for v in shlex.split(text, posix=os.name != 'nt') if str(v).strip()]
    except ValueError:
        return [v for v in text.split() if v]


class AgentBridge:
    """Translate a RunRequest into one supervised agent CLI invocation."""

    def __init__(
        self,
        supervisor: ProcessSupervisor | None = None,
        *,
        command: str = 'claude',
        cwd: Path | None = None,
        env_overrides: dict[str, str] | None = None,
        marker: str = COMPLETION_MARKER,
    ):
        self.supervisor = supervisor or ProcessSupervisor()
        self.command = command
        self.cwd = Path(cwd) if cwd is not None else None
        self.env_overrides = dict(env_overrides or {})
        self.marker = marker

    def build_argv(self, request: RunRequest, prompt: str) -> list[str]:
        base = split_command(self.command)
        if not base:
            raise ConfigurationError('agent command is empty')
        try:
            execution_mode = ExecutionMode(request.execution_mode)
            supervision_mode = SupervisionMode(request.supervision_mode)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        argv = list(base)
        if execution_mode == ExecutionMode.PLAN:
            argv.append(PLAN_FLAG)
        if supervision_mode == SupervisionMode.YOLO:
            argv.append(SKIP_PERMISSIONS_FLAG)
        argv.extend([PRINT_FLAG, prompt])
        return argv

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        env.update(self.env_overrides)
        # Agent CLIs switch off interactive prompts and colour under CI.
        env['CI'] = 'true'
        return env

    def resolve_prompt(self, request: RunRequest, task: dict | None) -> str:
        if request.prompt and request.prompt.strip():
            return request.prompt
        if task is None:
            raise ConfigurationError('prompt or task is required')
        return build_task_prompt(task, request.execution_mode, marker=self.marker)

    def execute(
        self,
        request: RunRequest,
        *,
        task: dict | None = None,
        on_event: Callable[[StreamEvent], None] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> RunOutcome:
        prompt = self.resolve_prompt(request, task)
        argv = self.build_argv(request, prompt)
        cwd = self.cwd
        if cwd is not None and not cwd.is_dir():
            raise ConfigurationError(f'working directory does not exist: {cwd}')

        mode = ExecutionMode(request.execution_mode).value
        _log.info(
            'agent run starting task_id=%s mode=%s supervision=%s timeout=%.1fs',
            request.task_id, mode, SupervisionMode(request.supervision_mode).value, float(request.timeout_seconds),
        )
        tracer = get_tracer('battlebridge.bridge')
        with tracer.start_as_current_span('agent.run') as span:
            span.set_attribute('battlebridge.task_id', request.task_id)
            span.set_attribute('battlebridge.execution_mode', mode)
            outcome = self.supervisor.run(
                argv[0],
                argv[1:],
                env=self.build_env(),
                cwd=cwd,
                timeout_seconds=float(request.timeout_seconds),
                on_event=on_event,
                cancel_event=cancel_event,
                classifier=OutputClassifier(marker=self.marker),
            )
            span.set_attribute('battlebridge.outcome', outcome.kind)
        return outcome


__all__ = [
    'AgentBridge',
    'PLAN_FLAG',
    'PRINT_FLAG',
    'SKIP_PERMISSIONS_FLAG',
    'split_command',
]
