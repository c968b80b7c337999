from __future__ import annotations

from ..core.errors import QueueUnavailable
from ..core.models import ExecutionResult, utcnow
from ..logging import get_logger
from .queue import JobQueue

log = get_logger("notifier")


class Notifier:
    def job_completed(self, job_id: str, session_id: str, result: ExecutionResult) -> None: ...


class QueueNotifier(Notifier):
    """
    Publishes "job completed" events to the notifications queue. Delivery is
    best effort: the result is already durable, so a broker failure here is
    logged and dropped.
    """

    def __init__(self, queue: JobQueue, destination: str = "notifications"):
        self.queue = queue
        self.destination = destination

    def job_completed(self, job_id, session_id, result) -> None:
        event = {
            "type": "execution_completed",
            "jobId": job_id,
            "sessionId": session_id,
            "result": result.model_dump(mode="json", by_alias=True),
            "at": utcnow().isoformat(),
        }
        try:
            self.queue.publish(self.destination, event, message_id=f"{job_id}:completed")
        except QueueUnavailable as e:
            log.warning("notification_dropped", job_id=job_id, session_id=session_id, error=e.message)
