from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

_TERMINAL_BATTLE_STATUSES = {'completed', 'failed', 'cancelled'}


@dataclass(frozen=True)
class BattleWorkspace:
    root: Path
    history_json: Path
    events_jsonl: Path
    logs_dir: Path


class ArtifactStore:
    """Per-task battle history, event log and agent output tails on disk."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._lock = threading.RLock()

    def create_battle_workspace(self, task_id: str) -> BattleWorkspace:
        _, task_root = self._resolve_task_root(task_id)
        logs_dir = task_root / 'logs'
        logs_dir.mkdir(parents=True, exist_ok=True)

        history_json = task_root / 'history.json'
        events_jsonl = task_root / 'events.jsonl'
        self._ensure_json(history_json, {'task_id': str(task_id).strip(), 'battles': []})
        self._ensure_text(events_jsonl, '')
        return BattleWorkspace(
            root=task_root,
            history_json=history_json,
            events_jsonl=events_jsonl,
            logs_dir=logs_dir,
        )

    def begin_battle(self, task_id: str, *, supervision_mode: str, resume: bool = False) -> dict:
        """Open a battle record, or reopen the latest one when resuming a paused battle."""
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            history = self._read_history(ws)
            battles = history['battles']
            now = self._utc_now_iso()
            if resume and battles and battles[-1].get('status') == 'paused':
                record = battles[-1]
                record['status'] = 'running'
                record['supervision_mode'] = supervision_mode
            else:
                record = {
                    'battle_id': f'battle-{uuid4().hex[:10]}',
                    'task_id': str(task_id).strip(),
                    'supervision_mode': supervision_mode,
                    'status': 'running',
                    'started_at': now,
                    'completed_at': None,
                    'duration_ms': None,
                    'error': None,
                    'attempts': [],
                }
                battles.append(record)
            record['updated_at'] = now
            self._write_history(ws, history)
            return dict(record)

    def update_battle(self, task_id: str, *, status: str, error: str | None = None) -> dict | None:
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            history = self._read_history(ws)
            if not history['battles']:
                return None
            record = history['battles'][-1]
            now = self._utc_now_iso()
            record['status'] = status
            record['error'] = error
            record['updated_at'] = now
            if status in _TERMINAL_BATTLE_STATUSES:
                record['completed_at'] = now
                record['duration_ms'] = self._duration_ms(record.get('started_at'), now)
            self._write_history(ws, history)
            return dict(record)

    def record_attempt(self, task_id: str, attempt: dict) -> dict | None:
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            history = self._read_history(ws)
            if not history['battles']:
                return None
            record = history['battles'][-1]
            entry = dict(attempt)
            entry.setdefault('attempt', len(record['attempts']) + 1)
            record['attempts'].append(entry)
            record['updated_at'] = self._utc_now_iso()
            self._write_history(ws, history)
            return entry

    def attempt_count(self, task_id: str) -> int:
        current = self.current_battle(task_id)
        return len(current['attempts']) if current else 0

    def list_battles(self, task_id: str) -> list[dict]:
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            return list(self._read_history(ws)['battles'])

    def current_battle(self, task_id: str) -> dict | None:
        battles = self.list_battles(task_id)
        return battles[-1] if battles else None

    def append_event(self, task_id: str, event: dict) -> None:
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            line = json.dumps(event, ensure_ascii=True, default=str)
            with ws.events_jsonl.open('a', encoding='utf-8') as f:
                f.write(line + '\n')

    def write_output_log(self, task_id: str, *, attempt: int, mode: str, lines: list[str]) -> Path:
        with self._lock:
            ws = self.create_battle_workspace(task_id)
            safe_mode = str(mode or 'run').strip().replace('/', '_').replace('\\', '_') or 'run'
            path = ws.logs_dir / f'attempt-{int(attempt):02d}-{safe_mode}.log'
            path.write_text('\n'.join(lines) + ('\n' if lines else ''), encoding='utf-8')
            return path

    def _resolve_task_root(self, task_id: str) -> tuple[str, Path]:
        task_id_text = str(task_id or '').strip()
        if not task_id_text:
            raise ValueError('task_id is required')

        battles_root = (self.root / 'battles').resolve()
        task_root = (battles_root / task_id_text).resolve(strict=False)
        try:
            task_root.relative_to(battles_root)
        except ValueError as exc:
            raise ValueError('invalid task_id') from exc
        if task_root == battles_root:
            raise ValueError('invalid task_id')
        return task_id_text, task_root

    @staticmethod
    def _read_history(ws: BattleWorkspace) -> dict:
        try:
            history = json.loads(ws.history_json.read_text(encoding='utf-8'))
        except (OSError, ValueError):
            history = {}
        if not isinstance(history, dict):
            history = {}
        battles = history.get('battles')
        history['battles'] = battles if isinstance(battles, list) else []
        return history

    @staticmethod
    def _write_history(ws: BattleWorkspace, history: dict) -> None:
        tmp = ws.history_json.with_suffix('.json.tmp')
        tmp.write_text(json.dumps(history, ensure_ascii=True, indent=2, default=str), encoding='utf-8')
        tmp.replace(ws.history_json)

    @staticmethod
    def _duration_ms(started_at: str | None, finished_at: str) -> int | None:
        if not started_at:
            return None
        try:
            start = datetime.fromisoformat(started_at)
            end = datetime.fromisoformat(finished_at)
        except ValueError:
            return None
        return max(0, int((end - start).total_seconds() * 1000))

    @staticmethod
    def _ensure_text(path: Path, content: str) -> None:
        if not path.exists():
            path.write_text(content, encoding='utf-8')

    @staticmethod
    def _ensure_json(path: Path, payload: dict) -> None:
        if not path.exists():
            path.write_text(json.dumps(payload, ensure_ascii=True, indent=2), encoding='utf-8')

    @staticmethod
    def _utc_now_iso() -> str:
        return datetime.now(timezone.utc).isoformat()


__all__ = ['ArtifactStore', 'BattleWorkspace']
