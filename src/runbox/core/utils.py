from __future__ import annotations

import uuid


def new_job_id() -> str:
    return uuid.uuid4().hex


def new_request_id() -> str:
    return str(uuid.uuid4())


def backoff_delay(retry_count: int, base_s: float, cap_s: float) -> float:
    """Delay before retry number ``retry_count + 1``: base doubled per attempt, capped."""
    return min(base_s * (2 ** retry_count), cap_s)
