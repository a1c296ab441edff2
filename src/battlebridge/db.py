from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
from pathlib import Path
import time
from typing import Iterator
from uuid import uuid4

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, relationship, sessionmaker

from battlebridge.domain.events import EventType, normalize_event_type
from battlebridge.domain.models import TaskStatus
from battlebridge.repository import TaskCreateRecord, check_transition


def _iso_utc(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    else:
        value = value.astimezone(timezone.utc)
    return value.isoformat()


class Base(DeclarativeBase):
    pass


class TaskEntity(Base):
    __tablename__ = 'tasks'

    task_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text(), nullable=False)
    priority: Mapped[int] = mapped_column(Integer(), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    last_error: Mapped[str | None] = mapped_column(Text(), nullable=True)
    failure_kind: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    events: Mapped[list['TaskEventEntity']] = relationship('TaskEventEntity', back_populates='task', cascade='all,delete-orphan')


class TaskEventEntity(Base):
    __tablename__ = 'task_events'
    __table_args__ = (
        UniqueConstraint('task_id', 'seq', name='uq_task_events_task_id_seq'),
    )

    id: Mapped[int] = mapped_column(Integer(), primary_key=True, autoincrement=True)
    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), nullable=False, index=True)
    seq: Mapped[int] = mapped_column(Integer(), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    attempt_number: Mapped[int | None] = mapped_column(Integer(), nullable=True)
    payload_json: Mapped[str] = mapped_column(Text(), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    task: Mapped[TaskEntity] = relationship('TaskEntity', back_populates='events')


class TaskEventCounterEntity(Base):
    __tablename__ = 'task_event_counters'

    task_id: Mapped[str] = mapped_column(String(64), ForeignKey('tasks.task_id'), primary_key=True)
    next_seq: Mapped[int] = mapped_column(Integer(), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {}
        if str(url or '').strip().lower().startswith('sqlite'):
            # Battle workers and API requests write from different threads.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
            self._ensure_sqlite_parent(url)
        self.engine = create_engine(url, **engine_kwargs)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, class_=Session)
        if self.engine.dialect.name == 'sqlite':
            self._configure_sqlite_pragmas()

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _ensure_sqlite_parent(url: str) -> None:
        database = make_url(url).database
        if not database or database == ':memory:':
            return
        Path(database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
            conn.exec_driver_sql('PRAGMA foreign_keys=ON')
            conn.exec_driver_sql('PRAGMA busy_timeout=30000')


class SqlTaskRepository:
    def __init__(self, db: Database):
        self.db = db

    def _sqlite_lock_retry_attempts(self) -> int:
        return 8 if self.db.engine.dialect.name == 'sqlite' else 1

    @staticmethod
    def _is_sqlite_lock_error(exc: Exception) -> bool:
        text = str(exc or '').lower()
        return 'database is locked' in text or 'database table is locked' in text

    @staticmethod
    def _sqlite_lock_backoff_seconds(attempt: int) -> float:
        return min(0.2, 0.02 * (2 ** max(0, int(attempt) - 1)))

    def create_task_record(self, record: TaskCreateRecord) -> dict:
        now = datetime.now(timezone.utc)
        task = TaskEntity(
            task_id=f'task-{uuid4().hex[:12]}',
            title=str(record.title).strip(),
            description=str(record.description or ''),
            priority=int(record.priority),
            status=TaskStatus.PENDING.value,
            last_error=None,
            failure_kind=None,
            created_at=now,
            updated_at=now,
            started_at=None,
            completed_at=None,
        )
        with self.db.session() as session:
            session.add(task)
            session.flush()
            return self._task_to_dict(task)

    def list_tasks(self, *, limit: int = 100, status: str | None = None) -> list[dict]:
        with self.db.session() as session:
            stmt = select(TaskEntity)
            if status:
                stmt = stmt.where(TaskEntity.status == status)
            stmt = stmt.order_by(TaskEntity.priority.asc(), TaskEntity.created_at.asc()).limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [self._task_to_dict(r) for r in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            if row is None:
                return None
            return self._task_to_dict(row)

    def update_task_status(
        self,
        task_id: str,
        *,
        status: str,
        reason: str | None,
        failure_kind: str | None = None,
    ) -> dict:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    row = session.get(TaskEntity, task_id)
                    if row is None:
                        raise KeyError(task_id)
                    now = datetime.now(timezone.utc)
                    for key, value in self._status_values(status, reason, failure_kind, now, row.started_at).items():
                        setattr(row, key, value)
                    session.add(row)
                    session.flush()
                    return self._task_to_dict(row)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('update_task_status_retry_exhausted')

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
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    row = session.get(TaskEntity, task_id)
                    if row is None:
                        raise KeyError(task_id)
                    values = self._status_values(
                        status, reason, failure_kind, datetime.now(timezone.utc), row.started_at,
                    )
                    result = session.execute(
                        update(TaskEntity)
                        .where(
                            TaskEntity.task_id == task_id,
                            TaskEntity.status == expected_status,
                        )
                        .values(**values)
                    )
                    if result.rowcount == 0:
                        return None
                    session.flush()
                    session.refresh(row)
                    return self._task_to_dict(row)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('update_task_status_if_retry_exhausted')

    @staticmethod
    def _status_values(
        status: str,
        reason: str | None,
        failure_kind: str | None,
        now: datetime,
        started_at: datetime | None,
    ) -> dict[str, object]:
        values: dict[str, object] = {
            'status': status,
            'last_error': reason,
            'failure_kind': failure_kind,
            'updated_at': now,
        }
        if status == TaskStatus.PLANNING.value:
            values['started_at'] = now
            values['completed_at'] = None
        elif status == TaskStatus.IN_PROGRESS.value and started_at is None:
            values['started_at'] = now
        elif status in {TaskStatus.COMPLETED.value, TaskStatus.FAILED.value}:
            values['completed_at'] = now
        elif status == TaskStatus.PENDING.value:
            values['started_at'] = None
            values['completed_at'] = None
        return values

    def append_event(
        self,
        task_id: str,
        *,
        event_type: str | EventType,
        payload: dict,
        attempt: int | None = None,
    ) -> dict:
        now = datetime.now(timezone.utc)
        max_attempts = max(3, self._sqlite_lock_retry_attempts())
        for retry in range(max_attempts):
            try:
                with self.db.session() as session:
                    task = session.get(TaskEntity, task_id)
                    if task is None:
                        raise KeyError(task_id)

                    next_seq = self._reserve_next_event_seq(session, task_id)
                    event = TaskEventEntity(
                        task_id=task_id,
                        seq=next_seq,
                        event_type=normalize_event_type(event_type),
                        attempt_number=attempt,
                        payload_json=json.dumps(payload, ensure_ascii=True, default=str),
                        created_at=now,
                    )
                    session.add(event)
                    session.flush()
                    return self._event_to_dict(event)
            except IntegrityError:
                if retry + 1 >= max_attempts:
                    raise
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or retry + 1 >= max_attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(retry + 1))
        raise RuntimeError('append_event_retry_exhausted')

    def list_events(self, task_id: str, *, after_seq: int = 0) -> list[dict]:
        with self.db.session() as session:
            task = session.get(TaskEntity, task_id)
            if task is None:
                raise KeyError(task_id)
            rows = session.execute(
                select(TaskEventEntity)
                .where(TaskEventEntity.task_id == task_id, TaskEventEntity.seq > int(after_seq))
                .order_by(TaskEventEntity.seq.asc())
            ).scalars().all()
            return [self._event_to_dict(r) for r in rows]

    @staticmethod
    def _reserve_next_event_seq(session: Session, task_id: str) -> int:
        initial_next_seq = (
            select((func.coalesce(func.max(TaskEventEntity.seq), 0) + 2))
            .where(TaskEventEntity.task_id == task_id)
            .scalar_subquery()
        )
        bind = session.get_bind()
        dialect_name = bind.dialect.name if bind is not None else ''

        if dialect_name in {'sqlite', 'postgresql'}:
            insert = sqlite_insert if dialect_name == 'sqlite' else pg_insert
            stmt = (
                insert(TaskEventCounterEntity)
                .values(task_id=task_id, next_seq=initial_next_seq)
                .on_conflict_do_update(
                    index_elements=[TaskEventCounterEntity.task_id],
                    set_={'next_seq': TaskEventCounterEntity.next_seq + 1},
                )
                .returning(TaskEventCounterEntity.next_seq)
            )
            reserved_next_seq = int(session.execute(stmt).scalar_one())
            return reserved_next_seq - 1

        # Fallback for other SQLAlchemy dialects.
        counter = session.get(TaskEventCounterEntity, task_id, with_for_update=True)
        if counter is None:
            max_seq = int(
                session.execute(
                    select(func.coalesce(func.max(TaskEventEntity.seq), 0))
                    .where(TaskEventEntity.task_id == task_id)
                ).scalar_one()
            )
            assigned_seq = max_seq + 1
            session.add(TaskEventCounterEntity(task_id=task_id, next_seq=assigned_seq + 1))
            session.flush()
            return assigned_seq

        assigned_seq = int(counter.next_seq)
        counter.next_seq = assigned_seq + 1
        session.add(counter)
        session.flush()
        return assigned_seq

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        return {
            'task_id': row.task_id,
            'title': row.title,
            'description': row.description,
            'priority': int(row.priority),
            'status': row.status,
            'last_error': row.last_error,
            'failure_kind': row.failure_kind,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
            'started_at': _iso_utc(row.started_at),
            'completed_at': _iso_utc(row.completed_at),
        }

    @staticmethod
    def _event_to_dict(row: TaskEventEntity) -> dict:
        return {
            'id': row.id,
            'task_id': row.task_id,
            'seq': row.seq,
            'type': row.event_type,
            'attempt': row.attempt_number,
            'payload': json.loads(row.payload_json),
            'created_at': _iso_utc(row.created_at),
        }


__all__ = [
    'Base',
    'Database',
    'SqlTaskRepository',
    'TaskEntity',
    'TaskEventCounterEntity',
    'TaskEventEntity',
]
