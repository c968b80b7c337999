from __future__ import annotations

import socket
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

import pytest

from runbox.core.errors import QueueUnavailable, SandboxUnavailable
from runbox.core.models import ExecutionResult
from runbox.executor.base import Executor
from runbox.services.job_store import JobStore
from runbox.services.notifier import Notifier
from runbox.services.queue import Delivery, JobQueue
from runbox.settings import Settings


# ---------- queue ----------


class FakeMessage:
    def __init__(self, payload, headers, message_id):
        self.payload = payload
        self.headers = dict(headers or {})
        self.message_id = message_id


class FakeDelivery(Delivery):
    def __init__(self, queue: "FakeQueue", destination: str, msg: FakeMessage):
        self._queue = queue
        self._destination = destination
        self._msg = msg
        self.payload = msg.payload
        self.headers = msg.headers
        self.message_id = msg.message_id
        self.outcome: Optional[str] = None

    def ack(self) -> None:
        assert self.outcome is None, "delivery settled twice"
        self.outcome = "ack"

    def nack(self, requeue: bool = False) -> None:
        assert self.outcome is None, "delivery settled twice"
        if requeue:
            self.outcome = "requeue"
            self._queue.messages[self._destination].appendleft(self._msg)
        else:
            # mirrors x-dead-letter routing on the broker
            self.outcome = "dead"
            self._queue.dead_letters[self._destination].append(self._msg)


class FakeQueue(JobQueue):
    def __init__(self):
        self.messages: Dict[str, Deque[FakeMessage]] = {}
        self.dead_letters: Dict[str, List[FakeMessage]] = {}
        self.published: List[tuple] = []
        self.fail_publish = False
        self.closed = False

    def _q(self, destination: str) -> Deque[FakeMessage]:
        self.dead_letters.setdefault(destination, [])
        return self.messages.setdefault(destination, deque())

    def publish(self, destination, payload, *, headers=None, message_id=None) -> None:
        if self.fail_publish:
            raise QueueUnavailable("broker down")
        self.published.append((destination, payload, dict(headers or {}), message_id))
        self._q(destination).append(FakeMessage(payload, headers, message_id))

    def next_delivery(self, destination: str) -> Optional[FakeDelivery]:
        q = self._q(destination)
        if not q:
            return None
        return FakeDelivery(self, destination, q.popleft())

    def consume(self, destination, handler, stop, poll_timeout=1.0) -> None:
        while not stop.is_set():
            d = self.next_delivery(destination)
            if d is None:
                return
            handler(d)

    def stats(self, destination):
        return {"name": destination, "messageCount": len(self._q(destination)), "consumerCount": 0}

    def close(self) -> None:
        self.closed = True


# ---------- sandbox ----------


class FakeExecutor(Executor):
    """Returns canned results; ``failures`` infrastructure errors are raised first."""

    def __init__(self, result: Optional[ExecutionResult] = None, failures: int = 0):
        self.result = result or ExecutionResult(stdout="hi\n", execution_time_ms=12, exit_code=0)
        self.failures = failures
        self.calls: List[dict] = []
        self.killed: List[str] = []
        self.kill_count = 0
        self.kill_error: Optional[Exception] = None
        self.healthy = True

    def execute(self, profile, code, stdin, timeout_ms, *, job_id=None, session_id=None):
        self.calls.append(
            {"language": profile.name, "code": code, "stdin": stdin, "timeout_ms": timeout_ms,
             "job_id": job_id, "session_id": session_id}
        )
        if self.failures > 0:
            self.failures -= 1
            raise SandboxUnavailable("docker daemon unreachable")
        return self.result

    def kill_session(self, session_id):
        self.killed.append(session_id)
        if self.kill_error is not None:
            raise self.kill_error
        return self.kill_count

    def ping(self):
        return self.healthy

    def stats(self):
        return {"runningSandboxes": 0, "totalSandboxes": 0}

    def close(self):
        pass


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events: List[tuple] = []

    def job_completed(self, job_id, session_id, result):
        self.events.append((job_id, session_id, result))


# ---------- docker client ----------


class FakeSocket:
    def __init__(self, chunks: List[bytes], hang: bool = False, error: Optional[Exception] = None):
        self.chunks = deque(chunks)
        self.hang = hang
        self.error = error
        self.timeout: Optional[float] = None
        self.sent = b""
        self.shut = False
        self.closed = False

    def settimeout(self, t):
        self.timeout = t

    def recv(self, n):
        if self.chunks:
            return self.chunks.popleft()
        if self.error is not None:
            raise self.error
        if self.hang:
            time.sleep(self.timeout or 0.01)
            raise socket.timeout("timed out")
        return b""

    def sendall(self, data):
        self.sent += data

    def shutdown(self, how):
        self.shut = True

    def close(self):
        self.closed = True


class FakeContainer:
    def __init__(self, cid: str, config: Dict[str, Any], sock: FakeSocket, exit_code: int = 0):
        self.id = cid
        self.config = config
        self.labels = config.get("labels", {})
        self.sock = sock
        self.exit_code = exit_code
        self.status = "created"
        self.started = False
        self.removed = False
        self.killed = False
        self.attach_params: Optional[dict] = None
        self.start_error: Optional[Exception] = None

    def attach_socket(self, params=None):
        self.attach_params = params
        return self.sock

    def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.started = True
        self.status = "running"

    def wait(self, timeout=None):
        self.status = "exited"
        return {"StatusCode": self.exit_code}

    def kill(self):
        self.killed = True
        self.status = "exited"

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.created: List[FakeContainer] = []
        self.create_error: Optional[Exception] = None

    def create(self, **config):
        if self.create_error is not None:
            raise self.create_error
        workdir = Path(next(iter(config["volumes"])))
        # snapshot what the sandbox would see at /workspace
        self.client.workspace_files = {p.name: p.read_bytes() for p in workdir.iterdir()}
        sock = self.client.next_socket or FakeSocket([])
        c = FakeContainer(f"c{len(self.created)}", config, sock, exit_code=self.client.next_exit_code)
        c.start_error = self.client.start_error
        self.created.append(c)
        return c

    def list(self, all=False, filters=None):
        wanted = dict(item.split("=", 1) for item in (filters or {}).get("label", []))
        out = []
        for c in self.created:
            if c.removed:
                continue
            if not all and c.status != "running":
                continue
            if all_labels_match(c.labels, wanted):
                out.append(c)
        return out


def all_labels_match(labels: Dict[str, str], wanted: Dict[str, str]) -> bool:
    return all(labels.get(k) == v for k, v in wanted.items())


class FakeImages:
    def __init__(self, present=(), unpullable=()):
        self.present = set(present)
        self.unpullable = set(unpullable)
        self.pulled: List[str] = []

    def get(self, name):
        from docker.errors import ImageNotFound

        if name not in self.present:
            raise ImageNotFound(f"no such image: {name}")
        return name

    def pull(self, name):
        from docker.errors import APIError

        if name in self.unpullable:
            raise APIError(f"pull access denied for {name}")
        self.pulled.append(name)
        self.present.add(name)
        return name


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers(self)
        self.images = FakeImages()
        self.next_socket: Optional[FakeSocket] = None
        self.next_exit_code = 0
        self.start_error: Optional[Exception] = None
        self.workspace_files: Dict[str, bytes] = {}

    def ping(self):
        return True

    def close(self):
        pass


# ---------- fixtures ----------


@pytest.fixture
def store(tmp_path):
    s = JobStore(f"sqlite:///{tmp_path / 'runbox.db'}")
    s.grant("s1", "owner", "owner")
    s.grant("s1", "editor", "editor")
    s.grant("s1", "viewer", "viewer")
    yield s
    s.close()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'runbox.db'}",
        amqp_url="memory://",
        workspace_dir=tmp_path / "ws",
    )


@pytest.fixture
def fake_queue():
    return FakeQueue()


@pytest.fixture
def fake_executor():
    return FakeExecutor()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def docker_client():
    return FakeDockerClient()
