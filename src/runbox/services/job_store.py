from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import Column, DateTime, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, Session, SQLModel, create_engine, select

from ..core.errors import StoreUnavailable
from ..core.models import ExecutionMode, ExecutionResult, JobStatus, Termination, utcnow


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC on both sides. SQLite keeps no offset, so naive reads are tagged as UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else _as_utc(value)

    def process_result_value(self, value, dialect):
        return None if value is None else _as_utc(value)


def _utc_column(index: bool = False) -> Column:
    return Column(UTCDateTime(), nullable=False, index=index)


class ExecutionLog(SQLModel, table=True):
    """Terminal record per job, polled by status queries. One row per job id."""

    __tablename__ = "execution_logs"

    job_id: str = Field(primary_key=True)
    session_id: str = Field(index=True)
    user_id: str = Field(index=True)
    request_id: Optional[str] = None
    language: str
    mode: str = ExecutionMode.ASYNC.value
    status: str
    stdout: str = ""
    stderr: str = ""
    execution_time_ms: Optional[int] = None
    timed_out: bool = False
    termination_reason: Optional[str] = None
    exit_code: Optional[int] = None
    execution_id: Optional[str] = None
    error: Optional[str] = None
    retry_count: int = 0
    created_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column(index=True))

    def result(self) -> Optional[ExecutionResult]:
        if self.termination_reason is None:
            return None
        return ExecutionResult(
            stdout=self.stdout,
            stderr=self.stderr,
            execution_time_ms=self.execution_time_ms or 0,
            timed_out=self.timed_out,
            termination_reason=Termination(self.termination_reason),
            exit_code=self.exit_code,
            execution_id=self.execution_id,
        )


class ExecutionHistory(SQLModel, table=True):
    """Append-only per-session history, ordered by completion."""

    __tablename__ = "execution_history"

    id: Optional[int] = Field(default=None, primary_key=True)
    job_id: str = Field(unique=True)
    session_id: str = Field(index=True)
    user_id: str
    language: str
    code: str
    stdout: str = ""
    stderr: str = ""
    execution_time_ms: int = 0
    timed_out: bool = False
    termination_reason: str
    executed_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class SessionMember(SQLModel, table=True):
    """Minimal session membership shape read by the permission check."""

    __tablename__ = "session_members"

    session_id: str = Field(primary_key=True)
    user_id: str = Field(primary_key=True)
    role: str = "viewer"  # owner | admin | editor | viewer


class SessionKill(SQLModel, table=True):
    __tablename__ = "session_kills"

    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(index=True)
    killed_by: str
    killed_at: datetime = Field(default_factory=utcnow, sa_column=_utc_column())


class JobStore:
    def __init__(self, url: str = "sqlite:///./runbox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self.SessionLocal() as s:
                yield s
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"database error: {e}") from e

    # ---------- results ----------

    def record_result(
        self,
        *,
        job_id: str,
        session_id: str,
        user_id: str,
        language: str,
        code: str,
        result: ExecutionResult,
        mode: ExecutionMode,
        request_id: Optional[str] = None,
        retry_count: int = 0,
    ) -> bool:
        """
        Appends the result to the session history and writes the job's log row
        in one transaction. Returns False when the job id was already recorded,
        which makes redelivered messages harmless.
        """
        status = JobStatus.COMPLETED.value
        log_row = ExecutionLog(
            job_id=job_id,
            session_id=session_id,
            user_id=user_id,
            request_id=request_id,
            language=language,
            mode=mode.value,
            status=status,
            stdout=result.stdout,
            stderr=result.stderr,
            execution_time_ms=result.execution_time_ms,
            timed_out=result.timed_out,
            termination_reason=result.termination_reason.value,
            exit_code=result.exit_code,
            execution_id=result.execution_id,
            retry_count=retry_count,
        )
        history_row = ExecutionHistory(
            job_id=job_id,
            session_id=session_id,
            user_id=user_id,
            language=language,
            code=code,
            stdout=result.stdout,
            stderr=result.stderr,
            execution_time_ms=result.execution_time_ms,
            timed_out=result.timed_out,
            termination_reason=result.termination_reason.value,
        )
        with self._session() as s:
            s.add(log_row)
            s.add(history_row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return False
        return True

    def record_failure(
        self,
        *,
        job_id: str,
        session_id: str,
        user_id: str,
        language: str,
        error: str,
        mode: ExecutionMode = ExecutionMode.ASYNC,
        request_id: Optional[str] = None,
        retry_count: int = 0,
        termination: Optional[Termination] = None,
    ) -> bool:
        """A failed job keeps no output. ``termination`` is set when the sandbox never produced a result."""
        row = ExecutionLog(
            job_id=job_id,
            session_id=session_id,
            user_id=user_id,
            request_id=request_id,
            language=language,
            mode=mode.value,
            status=JobStatus.FAILED.value,
            error=error[:2000],
            retry_count=retry_count,
            termination_reason=termination.value if termination else None,
        )
        with self._session() as s:
            s.add(row)
            try:
                s.commit()
            except IntegrityError:
                s.rollback()
                return False
        return True

    def get_log(self, job_id: str) -> Optional[ExecutionLog]:
        with self._session() as s:
            return s.get(ExecutionLog, job_id)

    def history(self, session_id: str, *, limit: int = 20, offset: int = 0) -> List[ExecutionHistory]:
        with self._session() as s:
            stmt = (
                select(ExecutionHistory)
                .where(ExecutionHistory.session_id == session_id)
                .order_by(ExecutionHistory.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(s.exec(stmt).all())

    def language_stats(self, since: datetime) -> List[Dict[str, Any]]:
        with self._session() as s:
            stmt = (
                select(
                    ExecutionLog.language,
                    func.count(ExecutionLog.job_id),
                    func.avg(ExecutionLog.execution_time_ms),
                )
                .where(ExecutionLog.created_at >= _as_utc(since))
                .where(ExecutionLog.status == JobStatus.COMPLETED.value)
                .group_by(ExecutionLog.language)
            )
            return [
                {"language": lang, "count": count, "avgExecutionTimeMs": float(avg or 0)}
                for lang, count, avg in s.exec(stmt).all()
            ]

    # ---------- sessions ----------

    def grant(self, session_id: str, user_id: str, role: str) -> None:
        with self._session() as s:
            s.merge(SessionMember(session_id=session_id, user_id=user_id, role=role))
            s.commit()

    def session_exists(self, session_id: str) -> bool:
        with self._session() as s:
            stmt = select(SessionMember).where(SessionMember.session_id == session_id).limit(1)
            return s.exec(stmt).first() is not None

    def role_of(self, session_id: str, user_id: str) -> Optional[str]:
        with self._session() as s:
            member = s.get(SessionMember, (session_id, user_id))
            return member.role if member else None

    def record_kill(self, session_id: str, user_id: str) -> datetime:
        row = SessionKill(session_id=session_id, killed_by=user_id)
        with self._session() as s:
            s.add(row)
            s.commit()
        return row.killed_at

    def killed_since(self, session_id: str, since: datetime) -> bool:
        with self._session() as s:
            stmt = (
                select(SessionKill)
                .where(SessionKill.session_id == session_id)
                .where(SessionKill.killed_at >= _as_utc(since))
                .limit(1)
            )
            return s.exec(stmt).first() is not None
