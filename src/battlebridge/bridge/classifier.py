from __future__ import annotations

from collections import deque
import re
from typing import Iterable

from battlebridge.bridge.outcomes import (
    COMPLETION_MARKER,
    NONZERO_EXIT_REASON,
    STDERR,
    STDOUT,
    Completed,
    Failed,
    RunOutcome,
    StreamEvent,
)

_ERROR_LABEL_RE = re.compile(r'^\s*(?:fatal\s+)?error\s*:\s*', re.IGNORECASE)


def strip_error_label(text: str) -> str:
    stripped = _ERROR_LABEL_RE.sub('', str(text or ''), count=1).strip()
    return stripped or str(text or '').strip()


class OutputClassifier:
    """Decide the terminal signal of one agent run from its line stream.

    Feed lines as they arrive, then call ``finish`` with the exit code.
    The completion marker is authoritative once seen; stderr only
    contributes the failure reason when the exit code is non-zero.
    """

    def __init__(
        self,
        *,
        marker: str = COMPLETION_MARKER,
        summary_lines: int = 5,
        tail_lines: int = 50,
    ):
        self.marker = str(marker).strip()
        self._recent_stdout: deque[str] = deque(maxlen=max(1, int(summary_lines)))
        self._stderr_tail: deque[str] = deque(maxlen=max(1, int(tail_lines)))
        self._summary: str | None = None

    @property
    def marker_seen(self) -> bool:
        return self._summary is not None

    def feed(self, event: StreamEvent) -> bool:
        """Consume one line. Returns True only for the line that first carries the marker."""
        line = str(event.line or '')
        if event.channel == STDERR:
            if line.strip():
                self._stderr_tail.append(line.rstrip())
            return False
        if event.channel != STDOUT:
            return False
        if self.marker_seen:
            return False
        if line.strip() == self.marker:
            self._summary = '\n'.join(self._recent_stdout)
            return True
        if line.strip():
            self._recent_stdout.append(line.rstrip())
        return False

    def finish(self, exit_code: int | None) -> RunOutcome:
        if self._summary is not None:
            return Completed(summary=self._summary, marker_seen=True)
        if exit_code == 0:
            return Completed(summary='', marker_seen=False)
        reason = NONZERO_EXIT_REASON
        if self._stderr_tail:
            reason = strip_error_label(self._stderr_tail[-1])
        detail = '\n'.join(self._stderr_tail) or None
        return Failed(reason=reason, exit_code=exit_code, detail=detail)


def classify(
    events: Iterable[StreamEvent],
    exit_code: int | None,
    *,
    marker: str = COMPLETION_MARKER,
) -> RunOutcome:
    classifier = OutputClassifier(marker=marker)
    for event in events:
        classifier.feed(event)
    return classifier.finish(exit_code)


__all__ = ['OutputClassifier', 'classify', 'strip_error_label']
