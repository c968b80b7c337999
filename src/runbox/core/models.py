from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from .errors import MalformedJob


class ExecutionMode(str, Enum):
    SYNC = "sync"
    ASYNC = "async"


class Termination(str, Enum):
    SUCCESS = "success"
    RUNTIME_ERROR = "runtime_error"
    TIMEOUT = "timeout"
    INFRASTRUCTURE_ERROR = "infrastructure_error"


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Limits:
    memory_bytes: int = 128 * 1024 * 1024
    memswap_bytes: int = 128 * 1024 * 1024
    cpu_shares: int = 512
    pids: int = 64
    tmpfs_size: str = "50m"

    @classmethod
    def from_config(cls, limits: Dict[str, Any]) -> "Limits":
        """
        Reads conf/limits.yaml shaped like:
          memory: {max: <bytes>, swap_max: <bytes>}
          pids:   {max: <n>}
          cpu:    {shares: <n>}
          tmpfs:  {size: "50m"}
        """
        d = cls()
        mem = limits.get("memory") or {}
        mem_max = int(mem.get("max", d.memory_bytes))
        # docker's memswap is memory + swap
        swap = int(mem.get("swap_max", 0))
        return cls(
            memory_bytes=mem_max,
            memswap_bytes=mem_max + swap,
            cpu_shares=int((limits.get("cpu") or {}).get("shares", d.cpu_shares)),
            pids=int((limits.get("pids") or {}).get("max", d.pids)),
            tmpfs_size=str((limits.get("tmpfs") or {}).get("size", d.tmpfs_size)),
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionResult(BaseModel):
    """Outcome of one sandbox run. Immutable once produced."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    stdout: str = ""
    stderr: str = ""
    execution_time_ms: int = 0
    timed_out: bool = False
    termination_reason: Termination = Termination.SUCCESS
    exit_code: Optional[int] = None
    execution_id: Optional[str] = None


class JobMessage(BaseModel):
    """Queue payload for one code-execution job."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    kind: Literal["code_execution"] = "code_execution"
    job_id: str = Field(min_length=1)
    request_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    language: str = Field(min_length=1)
    code: str = Field(min_length=1)
    stdin: str = ""
    timeout_ms: int = Field(gt=0)
    submitted_at: datetime

    @classmethod
    def from_payload(cls, payload: Any) -> "JobMessage":
        if not isinstance(payload, dict):
            raise MalformedJob(f"payload must be an object, got {type(payload).__name__}")
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
            raise MalformedJob(f"invalid fields: {', '.join(fields)}") from e

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


RETRY_COUNT_HEADER = "x-retry-count"
LAST_ERROR_HEADER = "x-last-error"
FIRST_ENQUEUED_HEADER = "x-first-enqueued-at"


@dataclass(frozen=True)
class RetryEnvelope:
    retry_count: int = 0
    last_error: Optional[str] = None
    first_enqueued_at: Optional[str] = None

    @classmethod
    def from_headers(cls, headers: Optional[Dict[str, Any]]) -> "RetryEnvelope":
        headers = headers or {}
        try:
            count = int(headers.get(RETRY_COUNT_HEADER, 0) or 0)
        except (TypeError, ValueError):
            count = 0
        return cls(
            retry_count=max(count, 0),
            last_error=headers.get(LAST_ERROR_HEADER),
            first_enqueued_at=headers.get(FIRST_ENQUEUED_HEADER),
        )

    def to_headers(self) -> Dict[str, Any]:
        headers: Dict[str, Any] = {RETRY_COUNT_HEADER: self.retry_count}
        if self.last_error is not None:
            headers[LAST_ERROR_HEADER] = self.last_error
        if self.first_enqueued_at is not None:
            headers[FIRST_ENQUEUED_HEADER] = self.first_enqueued_at
        return headers

    def next_attempt(self, error: str) -> "RetryEnvelope":
        return RetryEnvelope(
            retry_count=self.retry_count + 1,
            last_error=error[:500],
            first_enqueued_at=self.first_enqueued_at or utcnow().isoformat(),
        )


class Submission(BaseModel):
    """What ``submit`` hands back: the result inline, or only the job id when queued."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    mode: ExecutionMode
    job_id: str
    result: Optional[ExecutionResult] = None
    warning: Optional[str] = None


class StatusReport(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
