from __future__ import annotations

from pathlib import Path
from queue import Empty, Queue
import threading
import time
from typing import Callable

from battlebridge.bridge.classifier import OutputClassifier
from battlebridge.bridge.outcomes import (
    SPAWN_ERROR_REASON,
    STDERR,
    STDOUT,
    Cancelled,
    Failed,
    RunOutcome,
    StreamEvent,
    TimedOut,
)
from battlebridge.bridge.process import OsProcessLauncher, ProcessHandle, ProcessLauncher
from battlebridge.observability import get_logger

_log = get_logger('battlebridge.bridge.supervisor')

_MIN_TIMEOUT_SECONDS = 0.01


class ProcessSupervisor:
    """Run one child process to a single typed outcome.

    Output is pumped line by line from both pipes into one queue, forwarded
    to ``on_event`` and to the classifier; nothing is buffered beyond the queue.
    The call never raises for process-level failures and never returns
    while the child is still running.
    """

    def __init__(
        self,
        launcher: ProcessLauncher | None = None,
        *,
        kill_grace_seconds: float = 2.0,
        poll_interval_seconds: float = 0.05,
    ):
        self.launcher = launcher or OsProcessLauncher()
        self.kill_grace_seconds = max(0.01, float(kill_grace_seconds))
        self.poll_interval_seconds = max(0.005, float(poll_interval_seconds))

    def run(
        self,
        command: str,
        args: list[str] | None = None,
        *,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        timeout_seconds: float,
        on_event: Callable[[StreamEvent], None] | None = None,
        cancel_event: threading.Event | None = None,
        classifier: OutputClassifier | None = None,
    ) -> RunOutcome:
        argv = [command, *(args or [])]
        classifier = classifier or OutputClassifier()

        try:
            handle = self.launcher.spawn(argv, env=env, cwd=cwd)
        except (OSError, ValueError, TypeError) as exc:
            # Popen rejects NUL bytes in argv or env with ValueError and non-str env values with TypeError.
            _log.warning('spawn failed command=%s reason=%s', command, exc)
            return Failed(reason=SPAWN_ERROR_REASON, exit_code=None, detail=str(exc) or exc.__class__.__name__)

        started = time.monotonic()
        deadline = started + max(_MIN_TIMEOUT_SECONDS, float(timeout_seconds))
        queue: Queue = Queue()

        def _pump(channel: str) -> None:
            try:
                for line in handle.iter_lines(channel):
                    queue.put(StreamEvent.now(channel, line))
            except (OSError, ValueError):
                _log.debug('pump stopped channel=%s pid=%s', channel, handle.pid, exc_info=True)
            finally:
                queue.put(channel)

        workers = [
            threading.Thread(target=_pump, args=(STDOUT,), daemon=True),
            threading.Thread(target=_pump, args=(STDERR,), daemon=True),
        ]
        for worker in workers:
            worker.start()

        def _dispatch(event: StreamEvent) -> None:
            classifier.feed(event)
            if on_event is None:
                return
            try:
                on_event(event)
            except Exception:
                _log.warning('stream observer raised; continuing', exc_info=True)

        open_streams = len(workers)
        exited_at: float | None = None
        stop_reason: str | None = None
        elapsed = 0.0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                stop_reason = 'cancelled'
                break
            now = time.monotonic()
            if now >= deadline and handle.poll() is None:
                stop_reason = 'timeout'
                elapsed = now - started
                break

            remaining = deadline - now
            wait = min(self.poll_interval_seconds, remaining) if remaining > 0 else self.poll_interval_seconds
            try:
                item = queue.get(timeout=wait)
            except Empty:
                item = None
            if isinstance(item, StreamEvent):
                _dispatch(item)
            elif item is not None:
                open_streams -= 1

            if handle.poll() is not None:
                if exited_at is None:
                    exited_at = time.monotonic()
                drained = open_streams == 0 and queue.empty()
                # Descendants may hold the pipes open after the child exits.
                if drained or time.monotonic() - exited_at >= self.kill_grace_seconds:
                    break

        if stop_reason is not None:
            self._stop(handle)
            self._drain(queue, _dispatch)
            if stop_reason == 'timeout':
                _log.warning(
                    'agent run timed out pid=%s elapsed=%.3fs budget=%.3fs',
                    handle.pid, elapsed, float(timeout_seconds),
                )
                return TimedOut(elapsed=elapsed)
            _log.info('agent run cancelled pid=%s', handle.pid)
            return Cancelled()

        if open_streams > 0:
            # Child exited but descendants keep the pipes open.
            self._stop_orphans(handle, workers)
        self._drain(queue, _dispatch)
        for worker in workers:
            worker.join(timeout=0.2)
        exit_code = handle.poll()
        outcome = classifier.finish(exit_code)
        _log.info('agent run finished pid=%s exit_code=%s outcome=%s', handle.pid, exit_code, outcome.kind)
        return outcome

    def _stop(self, handle: ProcessHandle) -> None:
        """Graceful signal, then force kill after the grace window."""
        handle.terminate()
        if handle.wait(self.kill_grace_seconds) is not None:
            return
        _log.warning('process ignored terminate; killing pid=%s', handle.pid)
        handle.kill()
        if handle.wait(self.kill_grace_seconds) is None:
            _log.error('process still running after kill pid=%s', handle.pid)

    def _stop_orphans(self, handle: ProcessHandle, workers: list[threading.Thread]) -> None:
        """Signal what is left of an exited child's group.

        The leader is already reaped, so waiting on it says nothing about its
        descendants; the pumps closing is the only sign they let go. The
        force kill is always sent.
        """
        handle.terminate()
        deadline = time.monotonic() + self.kill_grace_seconds
        for worker in workers:
            worker.join(max(0.0, deadline - time.monotonic()))
        _log.warning('descendants held output pipes after exit; killing group pid=%s', handle.pid)
        handle.kill()

    @staticmethod
    def _drain(queue: Queue, dispatch: Callable[[StreamEvent], None]) -> None:
        while True:
            try:
                item = queue.get_nowait()
            except Empty:
                return
            if isinstance(item, StreamEvent):
                dispatch(item)


__all__ = ['ProcessSupervisor']
