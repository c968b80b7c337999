from __future__ import annotations

import heapq
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple


@dataclass(frozen=True)
class PendingJob:
    job_id: str
    session_id: str
    user_id: str
    language: str
    request_id: str
    submitted_at: datetime
    expires_at: float  # monotonic seconds


class PendingJobTracker:
    """
    In-memory table of queued jobs this gateway is waiting on.

    Bounded: entries past their guard are swept on every insert and lookup, and
    when the table is still full the oldest entry is evicted. Guards differ per
    job, so expiry order lives in a heap beside the insertion-ordered table.
    Losing an entry only means the status query falls through to the durable log.
    """

    def __init__(self, capacity: int = 10_000, *, clock: Callable[[], float] = time.monotonic):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._clock = clock
        self._jobs: "OrderedDict[str, PendingJob]" = OrderedDict()
        # (expires_at, job_id); entries whose job was completed or re-tracked go stale and are skipped
        self._expiry: List[Tuple[float, str]] = []
        self._lock = threading.Lock()
        self.evicted = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def track(
        self,
        job_id: str,
        *,
        session_id: str,
        user_id: str,
        language: str,
        request_id: str,
        submitted_at: datetime,
        guard_ms: int,
    ) -> PendingJob:
        entry = PendingJob(
            job_id=job_id,
            session_id=session_id,
            user_id=user_id,
            language=language,
            request_id=request_id,
            submitted_at=submitted_at,
            expires_at=self._clock() + guard_ms / 1000.0,
        )
        with self._lock:
            self._sweep_locked()
            self._jobs.pop(job_id, None)
            while len(self._jobs) >= self.capacity:
                self._jobs.popitem(last=False)
                self.evicted += 1
            self._jobs[job_id] = entry
            heapq.heappush(self._expiry, (entry.expires_at, job_id))
            if len(self._expiry) > 2 * self.capacity:
                self._compact_locked()
        return entry

    def get(self, job_id: str) -> Optional[PendingJob]:
        with self._lock:
            self._sweep_locked()
            return self._jobs.get(job_id)

    def complete(self, job_id: str) -> Optional[PendingJob]:
        with self._lock:
            return self._jobs.pop(job_id, None)

    def remove_session(self, session_id: str) -> List[str]:
        with self._lock:
            doomed = [jid for jid, e in self._jobs.items() if e.session_id == session_id]
            for jid in doomed:
                del self._jobs[jid]
        return doomed

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self._clock()
        removed = 0
        while self._expiry and self._expiry[0][0] <= now:
            expires_at, job_id = heapq.heappop(self._expiry)
            entry = self._jobs.get(job_id)
            if entry is not None and entry.expires_at == expires_at:
                del self._jobs[job_id]
                removed += 1
        return removed

    def _compact_locked(self) -> None:
        self._expiry = [(e.expires_at, jid) for jid, e in self._jobs.items()]
        heapq.heapify(self._expiry)
