from __future__ import annotations

import socket
import threading
import time
import uuid
from contextlib import nullcontext
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound

from ..core.errors import SandboxUnavailable
from ..core.languages import LANGUAGES, LanguageProfile
from ..core.models import ExecutionResult, Limits, Termination
from ..core.utils import new_job_id
from ..logging import get_logger
from ..services.storage import LocalFSStorage
from .base import ExecSpec, Executor
from .demux import DEFAULT_MAX_OUTPUT, FrameError, OutputCollector

log = get_logger("sandbox")

LABEL_MANAGED = "runbox.managed"
LABEL_JOB = "runbox.job_id"
LABEL_SESSION = "runbox.session_id"

WORKDIR = "/workspace"
TIMEOUT_MARKER = "\nExecution timed out"
WAIT_GRACE_S = 5
RECV_SIZE = 64 * 1024


def _raw_socket(sock: Any) -> Any:
    # attach_socket hands back a SocketIO wrapper over plain unix/tcp transports
    return getattr(sock, "_sock", sock)


class DockerExecutor(Executor):
    """
    One throwaway container per run:
      - memory ceiling without extra swap, cpu shares, pids limit
      - network_mode=none, read-only root, tmpfs /tmp, all capabilities dropped
      - private workspace bind-mounted at /workspace
    Containers carry labels with the job and session ids so a session's
    sandboxes can be killed without touching anyone else's.
    """

    def __init__(
        self,
        storage: LocalFSStorage,
        limits: Optional[Limits] = None,
        *,
        client: Any = None,
        max_concurrent: int = 0,
        poll_interval_s: float = 0.1,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage = storage
        self.limits = limits or Limits()
        self._client = client
        self._slots = threading.BoundedSemaphore(max_concurrent) if max_concurrent > 0 else None
        self.poll_interval_s = poll_interval_s
        self.max_output_bytes = max_output_bytes
        self._clock = clock
        self._live: Dict[str, Any] = {}
        self._live_lock = threading.Lock()

    # ------------ client ------------

    @property
    def client(self):
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as e:
                raise SandboxUnavailable(f"docker daemon unreachable: {e}") from e
        return self._client

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except (SandboxUnavailable, DockerException, OSError):
            return False

    def close(self) -> None:
        """Kills sandboxes still running in this process, then drops the client."""
        with self._live_lock:
            live = list(self._live.values())
        for job_id, container in live:
            log.warning("sandbox_aborted", job_id=job_id)
            self._teardown(container, job_id)
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------ lifecycle ------------

    def execute(
        self,
        profile: LanguageProfile,
        code: str,
        stdin: Optional[str],
        timeout_ms: int,
        *,
        job_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> ExecutionResult:
        job_id = job_id or new_job_id()
        with self._slots or nullcontext():
            try:
                workdir = self.storage.create_workspace(job_id)
            except OSError as e:
                raise SandboxUnavailable(f"cannot allocate workspace: {e}") from e
            try:
                self.storage.write_source(workdir, profile, code)
                stdin_bytes = self.storage.write_stdin(workdir, stdin)
                spec = ExecSpec(
                    job_id=job_id,
                    session_id=session_id,
                    profile=profile,
                    workdir=workdir,
                    timeout_ms=timeout_ms,
                    stdin=stdin_bytes,
                )
                return self._run(spec)
            except OSError as e:
                raise SandboxUnavailable(f"cannot prepare workspace: {e}") from e
            finally:
                self.storage.remove(workdir)
                if workdir.exists():
                    log.error("workspace_cleanup_failed", job_id=job_id, path=str(workdir))

    def _container_config(self, spec: ExecSpec, execution_id: str) -> Dict[str, Any]:
        lim = self.limits
        has_stdin = spec.stdin is not None
        return {
            "image": spec.profile.image,
            "command": list(spec.profile.command),
            "name": f"runbox-{execution_id[:12]}",
            "working_dir": WORKDIR,
            "detach": True,
            "tty": False,
            "stdin_open": has_stdin,
            "stdin_once": has_stdin,
            "network_mode": "none",
            "network_disabled": True,
            "mem_limit": lim.memory_bytes,
            "memswap_limit": lim.memswap_bytes,
            "cpu_shares": lim.cpu_shares,
            "pids_limit": lim.pids,
            "read_only": True,
            "tmpfs": {"/tmp": f"rw,exec,size={lim.tmpfs_size}"},
            "volumes": {str(spec.workdir): {"bind": WORKDIR, "mode": "rw"}},
            "cap_drop": ["ALL"],
            "security_opt": ["no-new-privileges"],
            "labels": {
                LABEL_MANAGED: "1",
                LABEL_JOB: spec.job_id,
                LABEL_SESSION: spec.session_id or "",
            },
        }

    def _run(self, spec: ExecSpec) -> ExecutionResult:
        execution_id = uuid.uuid4().hex
        container = None
        sock = None
        try:
            try:
                container = self.client.containers.create(**self._container_config(spec, execution_id))
                with self._live_lock:
                    self._live[execution_id] = (spec.job_id, container)
                sock = container.attach_socket(params={
                    "stdin": 1 if spec.stdin is not None else 0,
                    "stdout": 1,
                    "stderr": 1,
                    "stream": 1,
                })
                container.start()
            except (DockerException, OSError) as e:
                raise SandboxUnavailable(f"cannot start sandbox for {spec.profile.name}: {e}") from e

            started = self._clock()
            deadline = started + spec.timeout_ms / 1000.0
            raw = _raw_socket(sock)
            if spec.stdin is not None:
                self._send_stdin(raw, spec.stdin, spec.job_id)

            collector = OutputCollector(self.max_output_bytes)
            timed_out = self._collect(raw, collector, deadline)
            log.debug("sandbox_output_collected", job_id=spec.job_id, timed_out=timed_out)

            if timed_out:
                return ExecutionResult(
                    stdout=collector.stdout,
                    stderr=collector.stderr + TIMEOUT_MARKER,
                    execution_time_ms=spec.timeout_ms,
                    timed_out=True,
                    termination_reason=Termination.TIMEOUT,
                    execution_id=execution_id,
                )

            exit_code = self._exit_code(container, spec.job_id)
            elapsed_ms = int((self._clock() - started) * 1000)
            return ExecutionResult(
                stdout=collector.stdout,
                stderr=collector.stderr,
                execution_time_ms=min(elapsed_ms, spec.timeout_ms),
                timed_out=False,
                termination_reason=Termination.SUCCESS if exit_code == 0 else Termination.RUNTIME_ERROR,
                exit_code=exit_code,
                execution_id=execution_id,
            )
        finally:
            if sock is not None:
                try:
                    sock.close()
                except OSError:
                    pass
            if container is not None:
                with self._live_lock:
                    self._live.pop(execution_id, None)
                self._teardown(container, spec.job_id)

    # ------------ io ------------

    def _send_stdin(self, raw: Any, data: bytes, job_id: str) -> None:
        try:
            raw.sendall(data)
            raw.shutdown(socket.SHUT_WR)
        except OSError as e:
            # the program may already have exited without reading its input
            log.warning("sandbox_stdin_write_failed", job_id=job_id, error=str(e))

    def _collect(self, raw: Any, collector: OutputCollector, deadline: float) -> bool:
        """Reads frames until EOF (False) or until the deadline passes (True)."""
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                return True
            raw.settimeout(min(remaining, self.poll_interval_s))
            try:
                chunk = raw.recv(RECV_SIZE)
            except socket.timeout:
                continue
            except OSError as e:
                raise SandboxUnavailable(f"sandbox stream broke: {e}") from e
            if not chunk:
                return False
            try:
                collector.feed(chunk)
            except FrameError as e:
                raise SandboxUnavailable(f"corrupt sandbox stream: {e}") from e

    def _exit_code(self, container: Any, job_id: str) -> Optional[int]:
        try:
            status = container.wait(timeout=WAIT_GRACE_S)
        except (DockerException, OSError) as e:
            log.warning("sandbox_wait_failed", job_id=job_id, error=str(e))
            return None
        if isinstance(status, dict):
            return status.get("StatusCode")
        return int(status)

    def _teardown(self, container: Any, job_id: str) -> None:
        try:
            container.remove(force=True)
            return
        except NotFound:
            return
        except (DockerException, OSError) as e:
            log.warning("sandbox_remove_failed", job_id=job_id, error=str(e))
        # second attempt: kill first, then remove
        try:
            container.kill()
        except (DockerException, OSError):
            pass
        try:
            container.remove(force=True)
        except NotFound:
            pass
        except (DockerException, OSError) as e:
            log.error("sandbox_leaked", job_id=job_id, container=getattr(container, "id", None), error=str(e))

    # ------------ fleet ------------

    def _managed(self, *, all_states: bool = False, session_id: Optional[str] = None) -> List[Any]:
        labels = [f"{LABEL_MANAGED}=1"]
        if session_id is not None:
            labels.append(f"{LABEL_SESSION}={session_id}")
        return self.client.containers.list(all=all_states, filters={"label": labels})

    def kill_session(self, session_id: str) -> int:
        try:
            containers = self._managed(session_id=session_id)
        except (DockerException, OSError) as e:
            raise SandboxUnavailable(f"cannot list sandboxes: {e}") from e
        killed = 0
        for c in containers:
            try:
                c.kill()
                killed += 1
                log.info("sandbox_killed", session_id=session_id, container=c.id)
            except NotFound:
                continue
            except (DockerException, OSError) as e:
                log.warning("sandbox_kill_failed", session_id=session_id, container=c.id, error=str(e))
        return killed

    def stats(self) -> Dict[str, int]:
        try:
            total = self._managed(all_states=True)
        except (DockerException, OSError) as e:
            raise SandboxUnavailable(f"cannot list sandboxes: {e}") from e
        running = [c for c in total if getattr(c, "status", "") == "running"]
        return {"runningSandboxes": len(running), "totalSandboxes": len(total)}

    def ensure_images(self) -> List[str]:
        """Pulls missing profile images; returns the ones that could not be pulled."""
        missing: List[str] = []
        for image in sorted({p.image for p in LANGUAGES.values()}):
            try:
                self.client.images.get(image)
                continue
            except ImageNotFound:
                pass
            except (DockerException, OSError) as e:
                log.warning("image_check_failed", image=image, error=str(e))
            try:
                log.info("image_pull_started", image=image)
                self.client.images.pull(image)
                log.info("image_pull_finished", image=image)
            except (DockerException, OSError) as e:
                log.warning("image_pull_failed", image=image, error=str(e))
                missing.append(image)
        return missing
