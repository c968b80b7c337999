from __future__ import annotations

from typing import List, Optional


class RunboxError(Exception):
    """Base for every error the pipeline raises on purpose."""

    code = "runbox_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InputError(RunboxError):
    code = "invalid_input"

    def __init__(self, code: str, message: str, *, supported_languages: Optional[List[str]] = None):
        super().__init__(message, code=code)
        self.supported_languages = supported_languages


class AuthorizationError(RunboxError):
    code = "access_denied"


class MalformedJob(RunboxError):
    code = "malformed_job"


class SandboxUnavailable(RunboxError):
    """The isolated environment itself could not be created or driven."""

    code = "sandbox_unavailable"


class QueueUnavailable(RunboxError):
    code = "queue_unavailable"


class StoreUnavailable(RunboxError):
    """The results database rejected or could not serve a query."""

    code = "store_unavailable"
