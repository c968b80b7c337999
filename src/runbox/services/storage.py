from __future__ import annotations

import shutil
import tempfile
from pathlib import Path
from typing import Optional

from ..core.languages import STDIN_FILENAME, LanguageProfile


class LocalFSStorage:
    """
    Private working areas for sandbox runs, laid out as:
      <workspace_dir>/<job_id>-<random>/
        ├─ <profile.filename>   (submitted source)
        └─ input.txt            (stdin, only when supplied)

    Every directory is unique even if a job id repeats, and is owned by one run.
    """

    def __init__(self, workspace_dir: Path):
        self.workspace_dir = workspace_dir if workspace_dir.is_absolute() else workspace_dir.resolve()
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

    def create_workspace(self, job_id: str) -> Path:
        p = Path(tempfile.mkdtemp(prefix=f"{job_id}-", dir=self.workspace_dir))
        # the container user is not root on every image
        p.chmod(0o777)
        return p

    def write_source(self, workdir: Path, profile: LanguageProfile, code: str) -> Path:
        path = workdir / profile.filename
        path.write_text(code, encoding="utf-8")
        path.chmod(0o644)
        return path

    def write_stdin(self, workdir: Path, stdin: Optional[str]) -> Optional[bytes]:
        if not stdin:
            return None
        data = stdin.encode("utf-8")
        (workdir / STDIN_FILENAME).write_bytes(data)
        return data

    def remove(self, workdir: Path) -> None:
        shutil.rmtree(workdir, ignore_errors=True)
