from __future__ import annotations

from battlebridge.bridge.outcomes import COMPLETION_MARKER
from battlebridge.domain.models import ExecutionMode

_MODE_INSTRUCTIONS = {
    ExecutionMode.PLAN: (
        'Planning pass: inspect the repository and describe the changes you intend to make. '
        'Do not modify any files yet.'
    ),
    ExecutionMode.EXECUTE: (
        'Execution pass: implement the task in the working directory, keep the change focused, '
        'and run the relevant checks before finishing.'
    ),
}


def build_task_prompt(task: dict, execution_mode: ExecutionMode | str, *, marker: str = COMPLETION_MARKER) -> str:
    mode = ExecutionMode(execution_mode)
    title = str(task.get('title') or '').strip() or str(task.get('task_id') or 'untitled task')
    description = str(task.get('description') or '').strip()
    lines = [
        f'Task: {title}',
        f"Task id: {task.get('task_id', '')}",
        f"Priority: {task.get('priority', 0)}",
        '',
        _MODE_INSTRUCTIONS[mode],
    ]
    if description:
        lines.extend(['', 'Description:', description])
    lines.extend(
        [
            '',
            f'When the task is fully done, print {marker} on its own line.',
            'If you cannot finish, explain why on stderr and exit with a non-zero status.',
        ]
    )
    return '\n'.join(lines)


__all__ = ['build_task_prompt']
