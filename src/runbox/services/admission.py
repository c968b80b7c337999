from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Optional

from ..core.errors import InputError
from ..core.languages import LanguageProfile, get_profile, supported_languages
from ..core.models import ExecutionMode

FAST_LANGUAGES = frozenset({"javascript", "python"})
MAX_SYNC_CODE_SIZE = 1_000
MAX_SYNC_TIMEOUT_MS = 10_000
FALLBACK_TIMEOUT_MS = 30_000
MAX_CODE_SIZE = 50_000
MAX_STDIN_SIZE = 10_000
MIN_TIMEOUT_MS = 100


@dataclass(frozen=True)
class AdmissionPolicy:
    """
    Decides whether a job runs inline on the request thread or goes through the queue.
    Only small jobs in fast languages with short timeouts run inline; thresholds are inclusive.
    """

    fast_languages: FrozenSet[str] = FAST_LANGUAGES
    max_sync_code_size: int = MAX_SYNC_CODE_SIZE
    max_sync_timeout_ms: int = MAX_SYNC_TIMEOUT_MS

    def effective_timeout(self, language: str, requested_timeout_ms: Optional[int]) -> int:
        if requested_timeout_ms:
            return requested_timeout_ms
        profile = get_profile(language)
        return profile.default_timeout_ms if profile else FALLBACK_TIMEOUT_MS

    def decide(self, language: str, code_size: int, requested_timeout_ms: Optional[int]) -> ExecutionMode:
        if (
            language in self.fast_languages
            and code_size <= self.max_sync_code_size
            and self.effective_timeout(language, requested_timeout_ms) <= self.max_sync_timeout_ms
        ):
            return ExecutionMode.SYNC
        return ExecutionMode.ASYNC


@dataclass(frozen=True)
class RequestBounds:
    """Size and timeout limits every job must satisfy, whether it arrives over HTTP or off the queue."""

    max_code_size: int = MAX_CODE_SIZE
    max_stdin_size: int = MAX_STDIN_SIZE
    min_timeout_ms: int = MIN_TIMEOUT_MS

    def check(self, language: str, code: str, stdin: Optional[str], timeout_ms: Optional[int]) -> LanguageProfile:
        profile = get_profile(language)
        if profile is None:
            raise InputError(
                "unsupported_language",
                f"language {language!r} is not supported",
                supported_languages=supported_languages(),
            )
        if not code or not code.strip():
            raise InputError("code_required", "code must not be empty")
        if len(code) > self.max_code_size:
            raise InputError("code_too_large", f"code exceeds {self.max_code_size} characters")
        if stdin and len(stdin) > self.max_stdin_size:
            raise InputError("stdin_too_large", f"stdin exceeds {self.max_stdin_size} characters")
        if timeout_ms is not None and not (self.min_timeout_ms <= timeout_ms <= profile.max_timeout_ms):
            raise InputError(
                "timeout_out_of_range",
                f"timeout must be between {self.min_timeout_ms} and {profile.max_timeout_ms} ms",
            )
        return profile


DEFAULT_POLICY = AdmissionPolicy()
DEFAULT_BOUNDS = RequestBounds()


def decide(language: str, code_size: int, requested_timeout_ms: Optional[int]) -> ExecutionMode:
    return DEFAULT_POLICY.decide(language, code_size, requested_timeout_ms)
