"""
Queue consumer: drains ``code_execution`` and writes results to the store.

    received -> validating -> executing -> persisting -> acked
    validating (bad payload / unauthorized / killed / out of bounds) -> rejected, dead-lettered
    executing (sandbox unavailable) -> republished with backoff, or dead-lettered
    any step (store unavailable) -> republished with backoff, or dead-lettered
"""
from __future__ import annotations

import argparse
import signal
import threading
from typing import Any, Callable, List, Optional

from .core.errors import (
    AuthorizationError,
    InputError,
    MalformedJob,
    QueueUnavailable,
    SandboxUnavailable,
    StoreUnavailable,
)
from .core.models import ExecutionMode, JobMessage, RetryEnvelope, Termination
from .core.utils import backoff_delay
from .executor.base import Executor
from .logging import get_logger, setup_logging
from .services.admission import DEFAULT_BOUNDS, RequestBounds
from .services.authority import Permission, SessionAuthority
from .services.job_store import JobStore
from .services.notifier import Notifier
from .services.queue import Delivery, JobQueue

log = get_logger("worker")

RECONNECT_DELAY_S = 5.0


class Worker:
    """One slot: one queue connection, one message in flight."""

    def __init__(
        self,
        *,
        executor: Executor,
        queue: JobQueue,
        store: JobStore,
        authority: SessionAuthority,
        notifier: Notifier,
        destination: str = "code_execution",
        max_retries: int = 3,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        bounds: RequestBounds = DEFAULT_BOUNDS,
        stop: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], Any]] = None,
        poll_timeout: float = 1.0,
    ):
        self.executor = executor
        self.queue = queue
        self.store = store
        self.authority = authority
        self.notifier = notifier
        self.destination = destination
        self.max_retries = max_retries
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.bounds = bounds
        self.stop_event = stop or threading.Event()
        # waiting on the stop event lets shutdown cut a backoff short
        self._sleep = sleep or self.stop_event.wait
        self.poll_timeout = poll_timeout

    def run(self) -> None:
        self.queue.consume(self.destination, self.handle, self.stop_event, self.poll_timeout)

    def stop(self) -> None:
        self.stop_event.set()

    # ---------- state machine ----------

    def handle(self, delivery: Delivery) -> None:
        try:
            job = JobMessage.from_payload(delivery.payload)
        except MalformedJob as e:
            self._reject_malformed(delivery, e)
            return

        envelope = RetryEnvelope.from_headers(delivery.headers)
        try:
            self._process(delivery, job, envelope)
        except StoreUnavailable as e:
            # every store call in _process happens before the delivery is settled
            self._retry_or_dead_letter(delivery, job, envelope, e.message)

    def _process(self, delivery: Delivery, job: JobMessage, envelope: RetryEnvelope) -> None:
        jlog = log.bind(job_id=job.job_id, session_id=job.session_id, retry_count=envelope.retry_count)

        if self.store.get_log(job.job_id) is not None:
            jlog.info("job_already_recorded")
            delivery.ack()
            return

        try:
            self.authority.require(job.session_id, job.user_id, Permission.WRITE)
        except AuthorizationError as e:
            self._reject(delivery, job, envelope, f"{e.code}: {e.message}")
            return
        if self.store.killed_since(job.session_id, job.submitted_at):
            self._reject(delivery, job, envelope, "session_killed: session was killed after submission")
            return
        try:
            profile = self.bounds.check(job.language, job.code, job.stdin, job.timeout_ms)
        except InputError as e:
            self._reject(delivery, job, envelope, f"{e.code}: {e.message}")
            return

        jlog.info("job_executing", language=job.language, timeout_ms=job.timeout_ms)
        try:
            result = self.executor.execute(
                profile,
                job.code,
                job.stdin or None,
                job.timeout_ms,
                job_id=job.job_id,
                session_id=job.session_id,
            )
        except SandboxUnavailable as e:
            self._retry_or_dead_letter(delivery, job, envelope, e.message)
            return

        recorded = self.store.record_result(
            job_id=job.job_id,
            session_id=job.session_id,
            user_id=job.user_id,
            language=job.language,
            code=job.code,
            result=result,
            mode=ExecutionMode.ASYNC,
            request_id=job.request_id,
            retry_count=envelope.retry_count,
        )

        if recorded:
            self.notifier.job_completed(job.job_id, job.session_id, result)
        else:
            jlog.info("job_duplicate_result_ignored")
        delivery.ack()
        jlog.info(
            "job_completed",
            termination=result.termination_reason.value,
            execution_time_ms=result.execution_time_ms,
        )

    # ---------- failure paths ----------

    def _reject_malformed(self, delivery: Delivery, error: MalformedJob) -> None:
        payload = delivery.payload if isinstance(delivery.payload, dict) else {}
        job_id = payload.get("jobId") or delivery.message_id
        log.warning("job_rejected_malformed", job_id=job_id, error=error.message)
        if isinstance(job_id, str) and job_id:
            try:
                self.store.record_failure(
                    job_id=job_id,
                    session_id=str(payload.get("sessionId") or ""),
                    user_id=str(payload.get("userId") or ""),
                    language=str(payload.get("language") or ""),
                    error=f"{error.code}: {error.message}",
                )
            except StoreUnavailable as e:
                log.error("job_failure_not_recorded", job_id=job_id, error=e.message)
        delivery.nack(requeue=False)

    def _reject(self, delivery: Delivery, job: JobMessage, envelope: RetryEnvelope, reason: str) -> None:
        log.warning("job_rejected", job_id=job.job_id, session_id=job.session_id, reason=reason)
        self._record_failed(job, envelope, reason)
        delivery.nack(requeue=False)

    def _retry_or_dead_letter(self, delivery: Delivery, job: JobMessage, envelope: RetryEnvelope, error: str) -> None:
        if envelope.retry_count >= self.max_retries:
            log.error(
                "job_dead_lettered",
                job_id=job.job_id,
                session_id=job.session_id,
                retry_count=envelope.retry_count,
                error=error,
            )
            self._record_failed(
                job, envelope, f"retries exhausted: {error}", termination=Termination.INFRASTRUCTURE_ERROR
            )
            delivery.nack(requeue=False)
            return

        delay = backoff_delay(envelope.retry_count, self.base_delay_s, self.max_delay_s)
        log.warning(
            "job_retry_scheduled",
            job_id=job.job_id,
            retry_count=envelope.retry_count,
            delay_s=delay,
            error=error,
        )
        self._sleep(delay)
        retry = envelope.next_attempt(error)
        try:
            self.queue.publish(
                self.destination,
                job.to_payload(),
                headers=retry.to_headers(),
                message_id=job.job_id,
            )
        except QueueUnavailable as e:
            log.error("job_retry_publish_failed", job_id=job.job_id, error=e.message)
            delivery.nack(requeue=True)
            return
        delivery.ack()

    def _record_failed(
        self,
        job: JobMessage,
        envelope: RetryEnvelope,
        error: str,
        *,
        termination: Optional[Termination] = None,
    ) -> None:
        # the message is settled either way; a lost failure row only leaves status pending
        try:
            self.store.record_failure(
                job_id=job.job_id,
                session_id=job.session_id,
                user_id=job.user_id,
                language=job.language,
                error=error,
                request_id=job.request_id,
                retry_count=envelope.retry_count,
                termination=termination,
            )
        except StoreUnavailable as e:
            log.error("job_failure_not_recorded", job_id=job.job_id, session_id=job.session_id, error=e.message)


# ---------- process ----------


def run_slot(worker: Worker, queue: JobQueue, reconnect_delay_s: float = RECONNECT_DELAY_S) -> None:
    """Keeps one slot consuming until stopped, reconnecting after broker loss or a crashed handler."""
    try:
        while not worker.stop_event.is_set():
            try:
                worker.run()
            except QueueUnavailable as e:
                log.error("worker_connection_lost", error=e.message, retry_in_s=reconnect_delay_s)
            except Exception:
                log.exception("worker_slot_crashed", retry_in_s=reconnect_delay_s)
                # dropping the connection hands the unsettled message back to the broker
                queue.close()
            else:
                continue
            worker.stop_event.wait(reconnect_delay_s)
    finally:
        queue.close()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="runbox-worker", description="Drain the code execution queue.")
    p.add_argument("--slots", type=int, default=1, help="concurrent jobs, one broker connection each")
    p.add_argument("--pull-images", action="store_true", help="pull missing language images before consuming")
    p.add_argument("--log-level", default=None, help="overrides RUNBOX_LOG_LEVEL")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    from .services.orchestrator import Orchestrator

    args = build_parser().parse_args(argv)
    if args.slots < 1:
        raise SystemExit("--slots must be at least 1")

    orc = Orchestrator()
    setup_logging(args.log_level or orc.settings.log_level)

    if args.pull_images:
        missing = orc.executor.ensure_images()
        if missing:
            log.warning("images_missing", images=missing)

    stop = threading.Event()

    def _on_signal(signum, _frame):
        log.info("worker_stopping", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    threads = []
    for n in range(args.slots):
        queue = orc.new_queue()
        worker = orc.worker(queue, stop=stop)
        t = threading.Thread(target=run_slot, args=(worker, queue), name=f"runbox-slot-{n}", daemon=True)
        t.start()
        threads.append(t)
    log.info("worker_started", slots=args.slots, queue=orc.settings.queue_name)

    # in-flight jobs finish before their slot notices the stop flag
    while any(t.is_alive() for t in threads):
        for t in threads:
            t.join(timeout=1.0)

    orc.close()
    log.info("worker_stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
