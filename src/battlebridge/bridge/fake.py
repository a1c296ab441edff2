from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from queue import Queue
import threading
from typing import Callable, Iterator

from battlebridge.bridge.outcomes import COMPLETION_MARKER, STDERR, STDOUT

_EOF = object()


@dataclass(frozen=True)
class ScriptStep:
    channel: str
    line: str
    delay: float = 0.0


@dataclass(frozen=True)
class ProcessScript:
    """Transcript replayed by a scripted process.

    ``hang`` keeps the process alive after the last step until it is
    signalled; ``ignore_terminate`` makes it survive the graceful signal.
    """

    steps: tuple[ScriptStep, ...] = ()
    exit_code: int = 0
    hang: bool = False
    ignore_terminate: bool = False
    spawn_error: str | None = None

    @classmethod
    def success(cls, *lines: str, marker: str = COMPLETION_MARKER) -> 'ProcessScript':
        body = lines or ('Working on task...', 'Task completed successfully.')
        return cls(steps=tuple(ScriptStep(STDOUT, text) for text in (*body, marker)))

    @classmethod
    def error(cls, message: str = 'Error: Something went wrong', *, exit_code: int = 1) -> 'ProcessScript':
        return cls(steps=(ScriptStep(STDERR, message),), exit_code=exit_code)

    @classmethod
    def hanging(cls, *lines: str, ignore_terminate: bool = False) -> 'ProcessScript':
        return cls(
            steps=tuple(ScriptStep(STDOUT, text) for text in lines),
            hang=True,
            ignore_terminate=ignore_terminate,
        )

    @classmethod
    def missing_binary(cls, message: str = 'agent binary not found') -> 'ProcessScript':
        return cls(spawn_error=message)


class ScriptedProcess:
    def __init__(self, script: ProcessScript, *, pid: int):
        self.pid = pid
        self._script = script
        self._channels: dict[str, Queue] = {STDOUT: Queue(), STDERR: Queue()}
        self._stop = threading.Event()
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._returncode: int | None = None
        self._signal_code: int | None = None
        self.terminate_calls = 0
        self.kill_calls = 0
        self._driver = threading.Thread(target=self._drive, daemon=True)
        self._driver.start()

    def _drive(self) -> None:
        for step in self._script.steps:
            if step.delay > 0 and self._stop.wait(step.delay):
                break
            if self._stop.is_set():
                break
            self._channels.get(step.channel, self._channels[STDOUT]).put(step.line)
        if self._script.hang:
            self._stop.wait()
        with self._lock:
            self._returncode = self._signal_code if self._signal_code is not None else self._script.exit_code
        for q in self._channels.values():
            q.put(_EOF)
        self._done.set()

    def iter_lines(self, channel: str) -> Iterator[str]:
        q = self._channels[channel]
        while True:
            item = q.get()
            if item is _EOF:
                return
            yield item

    def poll(self) -> int | None:
        with self._lock:
            return self._returncode if self._done.is_set() else None

    def wait(self, timeout: float | None = None) -> int | None:
        if not self._done.wait(timeout):
            return None
        return self.poll()

    def terminate(self) -> None:
        self.terminate_calls += 1
        if self._script.ignore_terminate:
            return
        self._signal(-15)

    def kill(self) -> None:
        self.kill_calls += 1
        self._signal(-9)

    def _signal(self, code: int) -> None:
        with self._lock:
            if self._done.is_set():
                return
            if self._signal_code is None:
                self._signal_code = code
        self._stop.set()


class ScriptedProcessLauncher:
    """In-process stand-in for the agent CLI.

    Scripts are passed explicitly: either one script for every spawn or a
    callable that picks a script from the argv.
    """

    def __init__(self, script: ProcessScript | Callable[[list[str]], ProcessScript]):
        self._script = script
        self._lock = threading.Lock()
        self.spawned: list[dict] = []
        self.processes: list[ScriptedProcess] = []

    def spawn(self, argv: list[str], *, env: dict[str, str] | None, cwd: Path | None) -> ScriptedProcess:
        script = self._script(list(argv)) if callable(self._script) else self._script
        with self._lock:
            self.spawned.append({'argv': list(argv), 'env': dict(env or {}), 'cwd': cwd})
            if script.spawn_error:
                raise FileNotFoundError(script.spawn_error)
            process = ScriptedProcess(script, pid=10_000 + len(self.processes))
            self.processes.append(process)
        return process

    @property
    def argvs(self) -> list[list[str]]:
        with self._lock:
            return [list(item['argv']) for item in self.spawned]


def dry_run_script(argv: list[str]) -> ProcessScript:
    if '--plan' in argv:
        return ProcessScript.success('Reading task description.', 'Plan: apply the requested change and verify it.')
    return ProcessScript.success('Applying changes.', 'Task completed successfully.')


__all__ = [
    'ProcessScript',
    'ScriptStep',
    'ScriptedProcess',
    'ScriptedProcessLauncher',
    'dry_run_script',
]
