from __future__ import annotations

from datetime import datetime, time as dtime, timezone
from typing import Any, Dict, Optional

from ..core.errors import QueueUnavailable, SandboxUnavailable, StoreUnavailable
from ..core.languages import LANGUAGES, LanguageProfile, supported_languages
from ..core.models import (
    ExecutionMode,
    ExecutionResult,
    JobMessage,
    JobStatus,
    RetryEnvelope,
    StatusReport,
    Submission,
    utcnow,
)
from ..core.utils import new_job_id, new_request_id
from ..executor.base import Executor
from ..logging import get_logger
from .admission import DEFAULT_BOUNDS, DEFAULT_POLICY, AdmissionPolicy, RequestBounds
from .authority import Permission, SessionAuthority
from .job_store import ExecutionLog, JobStore
from .notifier import Notifier
from .queue import JobQueue
from .tracker import PendingJobTracker

log = get_logger("gateway")

MAX_HISTORY_LIMIT = 100


class ExecutionGateway:
    """
    Entry point for execution requests. Validates and authorizes, asks the
    admission policy where the job runs, then either runs it on the calling
    thread or enqueues it and remembers it in the pending tracker.
    """

    def __init__(
        self,
        *,
        executor: Executor,
        queue: JobQueue,
        store: JobStore,
        authority: SessionAuthority,
        notifier: Notifier,
        tracker: PendingJobTracker,
        policy: AdmissionPolicy = DEFAULT_POLICY,
        destination: str = "code_execution",
        bounds: RequestBounds = DEFAULT_BOUNDS,
        tracker_grace_ms: int = 10_000,
    ):
        self.executor = executor
        self.queue = queue
        self.store = store
        self.authority = authority
        self.notifier = notifier
        self.tracker = tracker
        self.policy = policy
        self.destination = destination
        self.bounds = bounds
        self.tracker_grace_ms = tracker_grace_ms

    # ---------- submit ----------

    def submit(
        self,
        session_id: str,
        user_id: str,
        language: str,
        code: str,
        stdin: Optional[str] = None,
        timeout_ms: Optional[int] = None,
        *,
        request_id: Optional[str] = None,
    ) -> Submission:
        self.authority.require(session_id, user_id, Permission.WRITE)
        profile = self.bounds.check(language, code, stdin, timeout_ms)

        job_id = new_job_id()
        request_id = request_id or new_request_id()
        effective_timeout = self.policy.effective_timeout(language, timeout_ms)
        mode = self.policy.decide(language, len(code), timeout_ms)
        log.info(
            "execution_admitted",
            job_id=job_id,
            request_id=request_id,
            session_id=session_id,
            language=language,
            mode=mode.value,
            timeout_ms=effective_timeout,
        )

        message = JobMessage(
            job_id=job_id,
            request_id=request_id,
            session_id=session_id,
            user_id=user_id,
            language=language,
            code=code,
            stdin=stdin or "",
            timeout_ms=effective_timeout,
            submitted_at=utcnow(),
        )
        if mode is ExecutionMode.SYNC:
            try:
                result = self._execute_inline(profile, message)
            except SandboxUnavailable as e:
                log.warning("sync_execution_fell_back", job_id=job_id, error=e.message)
                return self._enqueue(message)
            return self._finish_inline(message, result)
        return self._enqueue(message)

    def _execute_inline(self, profile: LanguageProfile, job: JobMessage) -> ExecutionResult:
        return self.executor.execute(
            profile,
            job.code,
            job.stdin or None,
            job.timeout_ms,
            job_id=job.job_id,
            session_id=job.session_id,
        )

    def _finish_inline(self, job: JobMessage, result: ExecutionResult) -> Submission:
        warning = None
        try:
            self.store.record_result(
                job_id=job.job_id,
                session_id=job.session_id,
                user_id=job.user_id,
                language=job.language,
                code=job.code,
                result=result,
                mode=ExecutionMode.SYNC,
                request_id=job.request_id,
            )
        except StoreUnavailable as e:
            # the caller still gets the output; only the history entry is missing
            log.error("sync_result_not_persisted", job_id=job.job_id, session_id=job.session_id, error=e.message)
            warning = "result was not saved and will not appear in history"
        self.notifier.job_completed(job.job_id, job.session_id, result)
        log.info(
            "sync_execution_finished",
            job_id=job.job_id,
            termination=result.termination_reason.value,
            execution_time_ms=result.execution_time_ms,
        )
        return Submission(mode=ExecutionMode.SYNC, job_id=job.job_id, result=result, warning=warning)

    def _enqueue(self, job: JobMessage) -> Submission:
        self.tracker.track(
            job.job_id,
            session_id=job.session_id,
            user_id=job.user_id,
            language=job.language,
            request_id=job.request_id,
            submitted_at=job.submitted_at,
            guard_ms=job.timeout_ms + self.tracker_grace_ms,
        )
        envelope = RetryEnvelope(first_enqueued_at=job.submitted_at.isoformat())
        try:
            self.queue.publish(
                self.destination,
                job.to_payload(),
                headers=envelope.to_headers(),
                message_id=job.job_id,
            )
        except QueueUnavailable:
            self.tracker.complete(job.job_id)
            raise
        log.info("job_enqueued", job_id=job.job_id, session_id=job.session_id, queue=self.destination)
        return Submission(mode=ExecutionMode.ASYNC, job_id=job.job_id)

    # ---------- status ----------

    @staticmethod
    def _report(row: ExecutionLog) -> StatusReport:
        return StatusReport(
            job_id=row.job_id,
            status=JobStatus(row.status),
            result=row.result(),
            error=row.error,
        )

    def status(self, job_id: str, user_id: str) -> StatusReport:
        pending = self.tracker.get(job_id)
        if pending is not None:
            self.authority.require(pending.session_id, user_id, Permission.READ)
            row = self.store.get_log(job_id)
            if row is None:
                return StatusReport(job_id=job_id, status=JobStatus.PENDING)
            self.tracker.complete(job_id)
            return self._report(row)

        row = self.store.get_log(job_id)
        if row is None:
            return StatusReport(job_id=job_id, status=JobStatus.NOT_FOUND)
        self.authority.require(row.session_id, user_id, Permission.READ)
        return self._report(row)

    # ---------- kill ----------

    def kill(self, session_id: str, user_id: str) -> Dict[str, Any]:
        self.authority.require(session_id, user_id, Permission.WRITE)
        # marker first: a worker picking up an older job from now on rejects it
        self.store.record_kill(session_id, user_id)
        cleared = self.tracker.remove_session(session_id)
        out: Dict[str, Any] = {"sessionId": session_id, "killedSandboxes": None, "clearedJobs": len(cleared)}
        try:
            out["killedSandboxes"] = self.executor.kill_session(session_id)
        except SandboxUnavailable as e:
            # marker and tracker are already updated, so queued jobs still get rejected
            log.error("session_sandbox_kill_failed", session_id=session_id, error=e.message)
            out["warning"] = f"running sandboxes were not stopped: {e.message}"
        log.info(
            "session_killed",
            session_id=session_id,
            user_id=user_id,
            sandboxes=out["killedSandboxes"],
            cleared_jobs=len(cleared),
        )
        return out

    # ---------- read-only views ----------

    def languages(self) -> Dict[str, Any]:
        return {
            "languages": supported_languages(),
            "configs": {name: p.as_dict() for name, p in LANGUAGES.items()},
        }

    def history(self, session_id: str, user_id: str, *, page: int = 1, limit: int = 20) -> Dict[str, Any]:
        self.authority.require(session_id, user_id, Permission.READ)
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_HISTORY_LIMIT)
        rows = self.store.history(session_id, limit=limit, offset=(page - 1) * limit)
        return {
            "sessionId": session_id,
            "page": page,
            "limit": limit,
            "executions": [
                {
                    "jobId": r.job_id,
                    "userId": r.user_id,
                    "language": r.language,
                    "code": r.code,
                    "stdout": r.stdout,
                    "stderr": r.stderr,
                    "executionTimeMs": r.execution_time_ms,
                    "timedOut": r.timed_out,
                    "terminationReason": r.termination_reason,
                    "executedAt": r.executed_at.isoformat(),
                }
                for r in rows
            ],
        }

    def stats(self) -> Dict[str, Any]:
        expired = self.tracker.sweep()
        out: Dict[str, Any] = {"pendingJobs": len(self.tracker), "expiredPendingJobs": expired}
        try:
            out["sandboxes"] = self.executor.stats()
        except SandboxUnavailable as e:
            out["sandboxes"] = {"error": e.message}
        try:
            out["queue"] = self.queue.stats(self.destination)
        except QueueUnavailable as e:
            out["queue"] = {"error": e.message}
        midnight = datetime.combine(utcnow().date(), dtime.min, tzinfo=timezone.utc)
        out["today"] = self.store.language_stats(midnight)
        return out

    def health(self) -> Dict[str, Any]:
        docker_ok = self.executor.ping()
        try:
            self.queue.stats(self.destination)
            queue_ok = True
        except QueueUnavailable:
            queue_ok = False
        return {
            "status": "ok" if docker_ok and queue_ok else "degraded",
            "sandbox": docker_ok,
            "queue": queue_ok,
            "pendingJobs": len(self.tracker),
        }
