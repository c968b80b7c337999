from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

from ..core.languages import LanguageProfile
from ..core.models import ExecutionResult


@dataclass(frozen=True)
class ExecSpec:
    job_id: str
    session_id: Optional[str]
    profile: LanguageProfile
    workdir: Path
    timeout_ms: int
    stdin: Optional[bytes] = None


class Executor:
    """
    Runs untrusted code. ``execute`` encodes program failures (non-zero exit,
    compile errors, timeouts) in the result and raises ``SandboxUnavailable``
    only when the isolated environment itself fails.
    """

    def execute(
        self,
        profile: LanguageProfile,
        code: str,
        stdin: Optional[str],
        timeout_ms: int,
        *,
        job_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ExecutionResult: ...

    def kill_session(self, session_id: str) -> int: ...

    def ping(self) -> bool: ...

    def stats(self) -> Dict[str, int]: ...

    def close(self) -> None: ...
