"""Durable job table (SQLite via SQLModel) plus artifact path resolution.

Every state transition is a single conditional ``UPDATE ... WHERE id = ? AND
status = ?`` so concurrent callers can never both win the same transition.
The store is the only source of truth for job state; callers re-read it
instead of trusting objects they hold.
"""

from __future__ import annotations

import functools
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterable, Iterator, Mapping, TypeVar

from sqlalchemy import Column, DateTime, and_, event, func, or_, update
from sqlalchemy.dialects.sqlite import JSON as SQLITE_JSON
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Field, Session, SQLModel, col, create_engine, select
from ulid import ULID

from xsnap.errors import JobNotFound, StaleTransition, StoreUnavailable, ValidationError
from xsnap.settings import Settings, get_settings

JOB_ID_PATTERN = re.compile(r"^[0-9A-Za-z]{26}$")
_RETRY_PENDING = "failed (retry pending)"

F = TypeVar("F", bound=Callable[..., Any])


class JobStatus(str, Enum):
    """Persisted lifecycle states for a capture job."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class CaptureRecord(SQLModel, table=True):
    """One capture job and the outcome of its most recent attempt."""

    __tablename__ = "captures"

    id: str = Field(primary_key=True)
    url: str
    target: str = Field(index=True)
    status: str = Field(default=JobStatus.QUEUED.value, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime()))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime()))
    attempt_count: int = Field(default=0)
    last_error: str | None = None
    retry_scheduled: bool = Field(default=False)
    retry_at: datetime | None = Field(default=None, sa_column=Column(DateTime()))
    artifact_location: str
    result_digests: dict[str, str] | None = Field(default=None, sa_column=Column(SQLITE_JSON))

    @property
    def is_terminal(self) -> bool:
        if self.status == JobStatus.SUCCESS.value:
            return True
        return self.status == JobStatus.FAILED.value and not self.retry_scheduled


@dataclass(frozen=True)
class StorageConfig:
    """Resolved filesystem + database locations."""

    data_dir: Path
    db_path: Path

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> StorageConfig:
        active = settings or get_settings()
        return cls(data_dir=active.storage.data_dir, db_path=active.storage.db_path)


def new_job_id() -> str:
    """Time-sortable 26-character ULID."""

    return str(ULID())


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive ``DateTime()`` columns."""

    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _translate_store_errors(func_: F) -> F:
    @functools.wraps(func_)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func_(*args, **kwargs)
        except OperationalError as exc:
            raise StoreUnavailable(str(exc.orig or exc)) from exc

    return wrapper  # type: ignore[return-value]


class Store:
    """Facade around the SQLite job table and the artifact directory tree."""

    def __init__(self, config: StorageConfig | None = None) -> None:
        self.config = config or StorageConfig.from_settings()
        self.config.data_dir.mkdir(parents=True, exist_ok=True)
        self.engine = _create_engine(self.config.db_path)
        SQLModel.metadata.create_all(self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        with Session(self.engine) as session:
            yield session

    # -- creation --------------------------------------------------------

    @_translate_store_errors
    def enqueue(
        self,
        target: str,
        artifact_location: str,
        *,
        job_id: str | None = None,
        url: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        """Insert a new queued job and return its id."""

        if not target or not target.strip():
            raise ValidationError("target must not be empty")
        if not artifact_location or not artifact_location.strip():
            raise ValidationError("artifact_location must not be empty")
        location = PurePosixPath(artifact_location)
        if location.is_absolute() or ".." in location.parts:
            raise ValidationError(f"artifact_location must be relative to the data dir: {artifact_location}")

        record = CaptureRecord(
            id=job_id or new_job_id(),
            url=url or target,
            target=target,
            status=JobStatus.QUEUED.value,
            created_at=_naive_utc(created_at or utcnow()),
            artifact_location=artifact_location,
        )
        record_id = record.id
        with self.session() as session:
            session.add(record)
            try:
                session.commit()
            except IntegrityError as exc:
                raise ValidationError(f"Job {record_id} already exists") from exc
        return record_id

    # -- reads -----------------------------------------------------------

    @_translate_store_errors
    def claim_queued(self, limit: int) -> list[CaptureRecord]:
        """Return up to ``limit`` queued jobs, oldest first, without mutating them."""

        if limit <= 0:
            return []
        statement = (
            select(CaptureRecord)
            .where(col(CaptureRecord.status) == JobStatus.QUEUED.value)
            .order_by(col(CaptureRecord.created_at), col(CaptureRecord.id))
            .limit(limit)
        )
        with self.session() as session:
            return list(session.exec(statement).all())

    @_translate_store_errors
    def fetch(self, job_id: str) -> CaptureRecord | None:
        with self.session() as session:
            return session.get(CaptureRecord, job_id)

    def get_by_id(self, job_id: str) -> CaptureRecord:
        record = self.fetch(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    @_translate_store_errors
    def due_retries(self, now: datetime, *, limit: int | None = None) -> list[CaptureRecord]:
        """Retry-pending failed jobs whose persisted ``retry_at`` has passed."""

        statement = (
            select(CaptureRecord)
            .where(
                col(CaptureRecord.status) == JobStatus.FAILED.value,
                col(CaptureRecord.retry_scheduled) == True,  # noqa: E712
                col(CaptureRecord.retry_at) <= _naive_utc(now),
            )
            .order_by(col(CaptureRecord.retry_at), col(CaptureRecord.id))
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self.session() as session:
            return list(session.exec(statement).all())

    @_translate_store_errors
    def list_captures(
        self,
        *,
        status: str | JobStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CaptureRecord], int]:
        """Newest-first page of jobs plus the total matching count."""

        statement = select(CaptureRecord)
        count_statement = select(func.count()).select_from(CaptureRecord)
        if status is not None:
            status_value = _coerce_status(status)
            statement = statement.where(col(CaptureRecord.status) == status_value)
            count_statement = count_statement.where(col(CaptureRecord.status) == status_value)
        statement = (
            statement.order_by(col(CaptureRecord.created_at).desc(), col(CaptureRecord.id).desc())
            .offset(max(0, offset))
            .limit(max(0, limit))
        )
        with self.session() as session:
            records = list(session.exec(statement).all())
            total = session.exec(count_statement).one()
        return records, int(total)

    @_translate_store_errors
    def find_active_targets(self, targets: Iterable[str]) -> set[str]:
        """Targets that already have a queued, running, or retry-pending job."""

        wanted = list(dict.fromkeys(targets))
        if not wanted:
            return set()
        statement = select(CaptureRecord.target).where(
            col(CaptureRecord.target).in_(wanted),
            or_(
                col(CaptureRecord.status).in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
                and_(
                    col(CaptureRecord.status) == JobStatus.FAILED.value,
                    col(CaptureRecord.retry_scheduled) == True,  # noqa: E712
                ),
            ),
        )
        with self.session() as session:
            return set(session.exec(statement).all())

    @_translate_store_errors
    def status_counts(self) -> dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        statement = select(CaptureRecord.status, func.count()).group_by(CaptureRecord.status)
        with self.session() as session:
            for status, count in session.exec(statement).all():
                counts[status] = int(count)
        return counts

    # -- transitions -----------------------------------------------------

    def mark_running(self, job_id: str, *, started_at: datetime) -> None:
        """Queued -> Running."""

        self._transition(
            job_id,
            expected=JobStatus.QUEUED.value,
            values={
                "status": JobStatus.RUNNING.value,
                "started_at": _naive_utc(started_at),
                "completed_at": None,
            },
        )

    def mark_success(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        result_digests: Mapping[str, str],
    ) -> None:
        """Running -> Success; clears any previous error."""

        self._transition(
            job_id,
            expected=JobStatus.RUNNING.value,
            values={
                "status": JobStatus.SUCCESS.value,
                "completed_at": _naive_utc(completed_at),
                "result_digests": dict(result_digests),
                "last_error": None,
                "retry_scheduled": False,
                "retry_at": None,
            },
        )

    def mark_failed_retryable(
        self,
        job_id: str,
        *,
        completed_at: datetime,
        error_text: str,
        retry_at: datetime,
    ) -> None:
        """Running -> Failed with a persisted requeue time; attempt count untouched."""

        self._transition(
            job_id,
            expected=JobStatus.RUNNING.value,
            values={
                "status": JobStatus.FAILED.value,
                "completed_at": _naive_utc(completed_at),
                "last_error": error_text,
                "retry_scheduled": True,
                "retry_at": _naive_utc(retry_at),
            },
        )

    def requeue_with_increment(self, job_id: str, error_text: str | None) -> None:
        """Retry-pending Failed -> Queued, bumping the attempt count."""

        self._transition(
            job_id,
            expected=JobStatus.FAILED.value,
            expected_label=_RETRY_PENDING,
            extra_conditions=(col(CaptureRecord.retry_scheduled) == True,),  # noqa: E712
            values={
                "status": JobStatus.QUEUED.value,
                "attempt_count": col(CaptureRecord.attempt_count) + 1,
                "last_error": error_text,
                "retry_scheduled": False,
                "retry_at": None,
                "completed_at": None,
            },
        )

    def mark_failed_terminal(self, job_id: str, *, completed_at: datetime, error_text: str) -> None:
        """Running -> Failed, final."""

        self._transition(
            job_id,
            expected=JobStatus.RUNNING.value,
            values={
                "status": JobStatus.FAILED.value,
                "completed_at": _naive_utc(completed_at),
                "last_error": error_text,
                "retry_scheduled": False,
                "retry_at": None,
            },
        )

    @_translate_store_errors
    def reset_all_running_to_queued(self) -> int:
        """Bulk Running -> Queued for startup recovery. Returns rows affected."""

        statement = (
            update(CaptureRecord)
            .where(col(CaptureRecord.status) == JobStatus.RUNNING.value)
            .values(status=JobStatus.QUEUED.value)
        )
        with self.engine.begin() as conn:
            affected = conn.execute(statement).rowcount
        return int(affected or 0)

    @_translate_store_errors
    def _transition(
        self,
        job_id: str,
        *,
        expected: str,
        values: dict[str, Any],
        expected_label: str | None = None,
        extra_conditions: tuple[Any, ...] = (),
    ) -> None:
        statement = (
            update(CaptureRecord)
            .where(
                col(CaptureRecord.id) == job_id,
                col(CaptureRecord.status) == expected,
                *extra_conditions,
            )
            .values(**values)
        )
        with self.engine.begin() as conn:
            affected = conn.execute(statement).rowcount
        if affected == 1:
            return
        with self.session() as session:
            current = session.get(CaptureRecord, job_id)
        if current is None:
            raise JobNotFound(job_id)
        raise StaleTransition(job_id, expected=expected_label or expected, actual=current.status)

    # -- artifacts -------------------------------------------------------

    def artifact_dir(self, record_or_location: CaptureRecord | str) -> Path:
        """Absolute directory holding a job's artifacts."""

        if isinstance(record_or_location, CaptureRecord):
            location = record_or_location.artifact_location
        else:
            location = record_or_location
        return self.config.data_dir / location

    def resolve_artifact(self, job_id: str, relative_path: str) -> Path:
        """Map ``job_id`` + artifact name to a file inside the job's artifact root.

        Raises ValidationError for malformed ids, JobNotFound for unknown jobs,
        PermissionError for hidden segments or paths escaping the artifact
        root, and FileNotFoundError when nothing is there.
        """

        if not JOB_ID_PATTERN.match(job_id or ""):
            raise ValidationError(f"Invalid capture id: {job_id}")
        record = self.get_by_id(job_id)
        # Dot segments cover ``..`` and in-progress ``.staging-*`` directories.
        if any(part.startswith(".") for part in PurePosixPath(relative_path).parts):
            raise PermissionError(relative_path)
        root = self.artifact_dir(record).resolve()
        target = (root / relative_path).resolve()
        try:
            target.relative_to(root)
        except ValueError:
            raise PermissionError(relative_path) from None
        if not target.is_file():
            raise FileNotFoundError(relative_path)
        return target


def build_store(config: StorageConfig | None = None) -> Store:
    """Convenience wrapper used by the API and CLI entry points."""

    return Store(config=config)


def _create_engine(db_path: Path):
    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 5},
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore[override]
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()

    return engine


def _coerce_status(value: str | Enum) -> str:
    if isinstance(value, Enum):
        return value.value
    normalized = str(value).strip().lower()
    if normalized not in {status.value for status in JobStatus}:
        raise ValidationError(f"Unknown status '{value}'")
    return normalized


__all__ = [
    "JOB_ID_PATTERN",
    "JobStatus",
    "CaptureRecord",
    "StorageConfig",
    "Store",
    "build_store",
    "new_job_id",
    "utcnow",
]
