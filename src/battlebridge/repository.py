from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import threading
from typing import Protocol
from uuid import uuid4

from battlebridge.domain.events import EventType, normalize_event_type
from battlebridge.domain.models import TaskStatus, can_transition, parse_status


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TaskCreateRecord:
    title: str
    description: str = ''
    priority: int = 0


def apply_status_timestamps(row: dict, status: str, now: str) -> None:
    """Maintain started/completed timestamps for a status write."""
    if status == TaskStatus.PLANNING.value:
        row['started_at'] = now
        row['completed_at'] = None
    elif status == TaskStatus.IN_PROGRESS.value and not row.get('started_at'):
        row['started_at'] = now
    elif status in {TaskStatus.COMPLETED.value, TaskStatus.FAILED.value}:
        row['completed_at'] = now
    elif status == TaskStatus.PENDING.value:
        row['started_at'] = None
        row['completed_at'] = None


def check_transition(expected_status: str, status: str) -> None:
    """Reject a conditional status write the task lifecycle does not allow."""
    if not can_transition(parse_status(expected_status), parse_status(status)):
        raise ValueError(f'illegal status transition: {expected_status} -> {status}')


class TaskRepository(Protocol):
    def create_task_record(self, record: TaskCreateRecord) -> dict:
        ...

    def list_tasks(self, *, limit: int = 100, status: str | None = None) -> list[dict]:
        """Tasks ordered by priority (lowest first), then creation time."""
        ...

    def get_task(self, task_id: str) -> dict | None:
        ...

    def update_task_status(
        self,
        task_id: str,
        *,
        status: str,
        reason: str | None,
        failure_kind: str | None = None,
    ) -> dict:
        ...

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        reason: str | None,
        failure_kind: str | None = None,
    ) -> dict | None:
        """Atomically update status only if current status matches *expected_status*.

        Returns the updated row on success, or ``None`` if the current status
        did not match (i.e. a concurrent transition already happened).
        Raises ``ValueError`` for a transition outside the task lifecycle.
        """
        ...

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | EventType,
        payload: dict,
        attempt: int | None = None,
    ) -> dict:
        ...

    def list_events(self, task_id: str, *, after_seq: int = 0) -> list[dict]:
        ...


class InMemoryTaskRepository:
    def __init__(self):
        self.items: dict[str, dict] = {}
        self.events: dict[str, list[dict]] = {}
        self._lock = threading.RLock()

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        task_id = f'task-{uuid4().hex[:12]}'
        now = _utc_now_iso()
        row = {
            'task_id': task_id,
            'title': str(record.title).strip(),
            'description': str(record.description or ''),
            'priority': int(record.priority),
            'status': TaskStatus.PENDING.value,
            'last_error': None,
            'failure_kind': None,
            'created_at': now,
            'updated_at': now,
            'started_at': None,
            'completed_at': None,
        }
        with self._lock:
            self.items[task_id] = row
            self.events[task_id] = []
            return dict(row)

    def list_tasks(self, *, limit: int = 100, status: str | None = None) -> list[dict]:
        with self._lock:
            rows = [dict(r) for r in self.items.values()]
        if status:
            rows = [r for r in rows if r['status'] == status]
        rows.sort(key=lambda r: (int(r.get('priority', 0)), r.get('created_at', '')))
        return rows[:limit]

    def get_task(self, task_id: str) -> dict | None:
        with self._lock:
            row = self.items.get(task_id)
            return dict(row) if row else None

    def update_task_status(
        self,
        task_id: str,
        *,
        status: str,
        reason: str | None,
        failure_kind: str | None = None,
    ) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return self._write_status(self.items[task_id], status, reason, failure_kind)

    def update_task_status_if(
        self,
        task_id: str,
        *,
        expected_status: str,
        status: str,
        reason: str | None,
        failure_kind: str | None = None,
    ) -> dict | None:
        check_transition(expected_status, status)
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            if self.items[task_id]['status'] != expected_status:
                return None
            return self._write_status(self.items[task_id], status, reason, failure_kind)

    @staticmethod
    def _write_status(row: dict, status: str, reason: str | None, failure_kind: str | None) -> dict:
        now = _utc_now_iso()
        row['status'] = status
        row['last_error'] = reason
        row['failure_kind'] = failure_kind
        apply_status_timestamps(row, status, now)
        row['updated_at'] = now
        return dict(row)

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | EventType,
        payload: dict,
        attempt: int | None = None,
    ) -> dict:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            event = {
                'seq': len(self.events[task_id]) + 1,
                'task_id': task_id,
                'type': normalize_event_type(event_type),
                'attempt': attempt,
                'payload': dict(payload),
                'created_at': _utc_now_iso(),
            }
            self.events[task_id].append(event)
            return dict(event)

    def list_events(self, task_id: str, *, after_seq: int = 0) -> list[dict]:
        with self._lock:
            if task_id not in self.items:
                raise KeyError(task_id)
            return [dict(e) for e in self.events.get(task_id, []) if int(e['seq']) > int(after_seq)]


__all__ = [
    'InMemoryTaskRepository',
    'TaskCreateRecord',
    'TaskRepository',
    'apply_status_timestamps',
    'check_transition',
]
