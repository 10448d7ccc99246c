from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
import json
import time
from typing import Iterator

from sqlalchemy import DateTime, String, Text, create_engine, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from awe_supervisor.domain.task import TaskState
from awe_supervisor.repository import TaskCreateRecord, new_task_id


def _iso_utc(value: datetime) -> str:
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
    leader_id: Mapped[str] = mapped_column(String(128), nullable=False)
    collaborators_json: Mapped[str] = mapped_column(Text(), nullable=False)
    execution_mode: Mapped[str] = mapped_column(String(16), nullable=False)
    repo_url: Mapped[str | None] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    last_reason: Mapped[str | None] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class Database:
    def __init__(self, url: str):
        engine_kwargs: dict[str, object] = {
            'future': True,
        }
        if str(url or '').strip().lower().startswith('sqlite'):
            # API threads and the supervisor worker share one file.
            engine_kwargs['connect_args'] = {'check_same_thread': False, 'timeout': 30}
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

    def _configure_sqlite_pragmas(self) -> None:
        with self.engine.connect() as conn:
            conn.exec_driver_sql('PRAGMA journal_mode=WAL')
            conn.exec_driver_sql('PRAGMA synchronous=NORMAL')
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
            task_id=new_task_id(),
            title=record.title,
            description=record.description,
            leader_id=record.leader_id,
            collaborators_json=json.dumps(list(record.collaborators), ensure_ascii=True),
            execution_mode=record.execution_mode,
            repo_url=None,
            status=TaskState.QUEUED.value,
            last_reason=None,
            created_at=now,
            updated_at=now,
        )
        with self.db.session() as session:
            session.add(task)
            session.flush()
            return self._task_to_dict(task)

    def list_tasks(self, *, limit: int = 100) -> list[dict]:
        with self.db.session() as session:
            rows = session.execute(
                select(TaskEntity).order_by(TaskEntity.created_at.desc()).limit(max(0, int(limit)))
            ).scalars().all()
            return [self._task_to_dict(row) for row in rows]

    def get_task(self, task_id: str) -> dict | None:
        with self.db.session() as session:
            row = session.get(TaskEntity, task_id)
            return self._task_to_dict(row) if row is not None else None

    def update_task_status(self, task_id: str, *, status: str, reason: str | None) -> dict:
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    row = session.get(TaskEntity, task_id)
                    if row is None:
                        raise KeyError(task_id)
                    row.status = status
                    row.last_reason = reason
                    row.updated_at = datetime.now(timezone.utc)
                    session.flush()
                    return self._task_to_dict(row)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('update_task_status_retry_exhausted')

    def set_repo_url(self, task_id: str, repo_url: str) -> dict:
        value = str(repo_url or '').strip() or None
        attempts = self._sqlite_lock_retry_attempts()
        for attempt in range(1, attempts + 1):
            try:
                with self.db.session() as session:
                    # conditional update keeps the first writer's URL
                    session.execute(
                        update(TaskEntity)
                        .where(TaskEntity.task_id == task_id, TaskEntity.repo_url.is_(None))
                        .values(repo_url=value, updated_at=datetime.now(timezone.utc))
                    )
                    row = session.get(TaskEntity, task_id)
                    if row is None:
                        raise KeyError(task_id)
                    session.refresh(row)
                    return self._task_to_dict(row)
            except OperationalError as exc:
                if (not self._is_sqlite_lock_error(exc)) or attempt >= attempts:
                    raise
                time.sleep(self._sqlite_lock_backoff_seconds(attempt))
        raise RuntimeError('set_repo_url_retry_exhausted')

    @staticmethod
    def _task_to_dict(row: TaskEntity) -> dict:
        try:
            collaborators = json.loads(row.collaborators_json or '[]')
        except json.JSONDecodeError:
            collaborators = []
        if not isinstance(collaborators, list):
            collaborators = []
        return {
            'task_id': row.task_id,
            'title': row.title,
            'description': row.description,
            'leader_id': row.leader_id,
            'collaborators': [str(item) for item in collaborators],
            'execution_mode': row.execution_mode,
            'repo_url': row.repo_url,
            'status': row.status,
            'last_reason': row.last_reason,
            'created_at': _iso_utc(row.created_at),
            'updated_at': _iso_utc(row.updated_at),
        }
