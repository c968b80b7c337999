from __future__ import annotations

import threading
from typing import Callable, Optional

from ..core.models import Limits
from ..executor.base import Executor
from ..executor.docker_executor import DockerExecutor
from ..settings import Settings, load_settings
from ..worker import Worker
from .admission import AdmissionPolicy, RequestBounds
from .authority import SessionAuthority, SqlSessionAuthority
from .gateway import ExecutionGateway
from .job_store import JobStore
from .notifier import Notifier, QueueNotifier
from .queue import JobQueue, KombuJobQueue
from .storage import LocalFSStorage
from .tracker import PendingJobTracker


class Orchestrator:
    """
    Builds every long-lived component from settings and owns their lifetime.
    Anything passed in explicitly replaces the default, which is how tests
    swap in fakes. ``close`` releases in reverse order of construction.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[JobStore] = None,
        authority: Optional[SessionAuthority] = None,
        executor: Optional[Executor] = None,
        queue_factory: Optional[Callable[[], JobQueue]] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.settings = s = settings or load_settings()
        self.store = store or JobStore(s.database_url)
        self.authority = authority or SqlSessionAuthority(self.store)
        self.executor = executor or DockerExecutor(
            LocalFSStorage(s.workspace_dir),
            Limits.from_config(s.limits),
            max_concurrent=s.max_concurrent_sandboxes,
        )
        self._queue_factory = queue_factory or (lambda: KombuJobQueue.from_settings(s))
        self.queue = self.new_queue()
        self._notifier = notifier
        self.notifier = self._notifier_for(self.queue)
        self.tracker = PendingJobTracker(s.tracker_capacity)
        self.policy = AdmissionPolicy(
            fast_languages=frozenset(s.fast_languages),
            max_sync_code_size=s.max_sync_code_size,
            max_sync_timeout_ms=s.max_sync_timeout_ms,
        )
        self.bounds = RequestBounds(
            max_code_size=s.max_code_size,
            max_stdin_size=s.max_stdin_size,
            min_timeout_ms=s.min_timeout_ms,
        )
        self.gateway = ExecutionGateway(
            executor=self.executor,
            queue=self.queue,
            store=self.store,
            authority=self.authority,
            notifier=self.notifier,
            tracker=self.tracker,
            policy=self.policy,
            destination=s.queue_name,
            bounds=self.bounds,
            tracker_grace_ms=s.tracker_grace_ms,
        )

    def new_queue(self) -> JobQueue:
        return self._queue_factory()

    def _notifier_for(self, queue: JobQueue) -> Notifier:
        return self._notifier or QueueNotifier(queue, self.settings.notification_queue)

    def worker(self, queue: Optional[JobQueue] = None, *, stop: Optional[threading.Event] = None) -> Worker:
        """A worker slot bound to ``queue`` (a fresh connection when omitted)."""
        queue = queue or self.new_queue()
        s = self.settings
        return Worker(
            executor=self.executor,
            queue=queue,
            store=self.store,
            authority=self.authority,
            notifier=self._notifier_for(queue),
            destination=s.queue_name,
            max_retries=s.max_retries,
            bounds=self.bounds,
            base_delay_s=s.retry_base_delay_s,
            max_delay_s=s.retry_max_delay_s,
            stop=stop,
        )

    def close(self) -> None:
        self.queue.close()
        self.executor.close()
        self.store.close()
