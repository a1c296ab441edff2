from __future__ import annotations

from pathlib import Path
import shlex
import sys
import time

import pytest


def _prepend_repo_src_to_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / 'src'
    if not src.is_dir():
        return
    src_text = str(src)
    normalized = src_text.replace('\\', '/').lower()
    remaining = [
        item for item in sys.path
        if str(item or '').strip() and str(item).replace('\\', '/').lower() != normalized
    ]
    sys.path[:] = [src_text, *remaining]


_prepend_repo_src_to_syspath()

MOCK_AGENT = Path(__file__).resolve().parent / 'fixtures' / 'mock_agent.py'


def mock_agent_command(scenario: str) -> str:
    return ' '.join(shlex.quote(part) for part in (sys.executable, str(MOCK_AGENT), scenario))


def wait_for(predicate, *, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def mock_agent_path() -> Path:
    return MOCK_AGENT
