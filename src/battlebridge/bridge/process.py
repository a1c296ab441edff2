from __future__ import annotations

import os
from pathlib import Path
import shutil
import signal
import subprocess
from typing import Iterator, Protocol

from battlebridge.bridge.outcomes import STDERR, STDOUT

_POSIX = os.name != 'nt'


class ProcessHandle(Protocol):
    pid: int | None

    def iter_lines(self, channel: str) -> Iterator[str]:
        """Yield complete lines of *channel* without terminators; the last partial line is flushed at EOF."""
        ...

    def poll(self) -> int | None:
        ...

    def wait(self, timeout: float | None = None) -> int | None:
        """Return the exit code, or ``None`` if the process is still running after *timeout*."""
        ...

    def terminate(self) -> None:
        ...

    def kill(self) -> None:
        ...


class ProcessLauncher(Protocol):
    def spawn(self, argv: list[str], *, env: dict[str, str] | None, cwd: Path | None) -> ProcessHandle:
        """Start one child. Raises ``OSError`` (or ``ValueError``/``TypeError`` for unusable argv or env)."""
        ...


class OsProcessHandle:
    def __init__(self, process: subprocess.Popen):
        self._process = process
        self.pid = process.pid

    def iter_lines(self, channel: str) -> Iterator[str]:
        pipe = self._process.stdout if channel == STDOUT else self._process.stderr
        if pipe is None:
            return
        try:
            for raw in iter(pipe.readline, ''):
                yield raw.rstrip('\r\n')
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    def poll(self) -> int | None:
        return self._process.poll()

    def wait(self, timeout: float | None = None) -> int | None:
        try:
            return self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    def terminate(self) -> None:
        if not _POSIX:
            if self._process.poll() is None:
                self._process.terminate()
            return
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        if not _POSIX:
            if self._process.poll() is None:
                self._process.kill()
            return
        self._signal_group(signal.SIGKILL)

    def _signal_group(self, sig: int) -> None:
        # The child leads its own session, so the group id equals its pid.
        try:
            os.killpg(self._process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if self._process.poll() is None:
                self._process.send_signal(sig)


class OsProcessLauncher:
    """Start agent processes with piped output in a fresh process group."""

    def spawn(self, argv: list[str], *, env: dict[str, str] | None, cwd: Path | None) -> OsProcessHandle:
        resolved = self._resolve_executable(list(argv))
        process = subprocess.Popen(
            resolved,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding='utf-8',
            errors='replace',
            cwd=str(cwd) if cwd is not None else None,
            bufsize=1,
            env=env,
            start_new_session=_POSIX,
        )
        return OsProcessHandle(process)

    @staticmethod
    def _resolve_executable(argv: list[str]) -> list[str]:
        if not argv:
            return argv
        first = str(argv[0]).strip()
        if not first:
            return argv
        resolved = shutil.which(first)
        if not resolved:
            return argv
        patched = list(argv)
        patched[0] = resolved
        return patched


__all__ = [
    'OsProcessHandle',
    'OsProcessLauncher',
    'ProcessHandle',
    'ProcessLauncher',
    'STDERR',
    'STDOUT',
]
