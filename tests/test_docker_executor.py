import pytest
from docker.errors import APIError

from conftest import FakeSocket
from runbox.core.errors import SandboxUnavailable
from runbox.core.languages import get_profile
from runbox.core.models import Limits, Termination
from runbox.executor.demux import STDERR, STDOUT, encode_frame
from runbox.executor.docker_executor import LABEL_JOB, LABEL_SESSION, DockerExecutor
from runbox.services.storage import LocalFSStorage


@pytest.fixture
def storage(tmp_path):
    return LocalFSStorage(tmp_path / "ws")


@pytest.fixture
def executor(storage, docker_client):
    return DockerExecutor(storage, Limits(), client=docker_client, poll_interval_s=0.01)


def workspaces_left(storage):
    return list(storage.workspace_dir.iterdir())


def test_successful_run(executor, docker_client, storage):
    docker_client.next_socket = FakeSocket([
        encode_frame(STDOUT, b"hi\n"),
        encode_frame(STDERR, b"warn\n"),
    ])
    r = executor.execute(get_profile("python"), 'print("hi")', None, 2_000, job_id="j1", session_id="s1")

    assert r.stdout == "hi\n"
    assert r.stderr == "warn\n"
    assert r.termination_reason is Termination.SUCCESS
    assert r.exit_code == 0
    assert not r.timed_out
    assert r.execution_id
    assert docker_client.workspace_files == {"code.py": b'print("hi")'}
    container = docker_client.containers.created[0]
    assert container.removed
    assert workspaces_left(storage) == []


def test_nonzero_exit_is_runtime_error(executor, docker_client, storage):
    docker_client.next_exit_code = 1
    docker_client.next_socket = FakeSocket([encode_frame(STDERR, b"Traceback\n")])
    r = executor.execute(get_profile("python"), "raise SystemExit(1)", None, 2_000)

    assert r.termination_reason is Termination.RUNTIME_ERROR
    assert r.exit_code == 1
    assert r.stderr == "Traceback\n"
    assert docker_client.containers.created[0].removed
    assert workspaces_left(storage) == []


def test_timeout_reports_bound_and_tears_down(executor, docker_client, storage):
    docker_client.next_socket = FakeSocket([encode_frame(STDOUT, b"start\n")], hang=True)
    r = executor.execute(get_profile("python"), "import time; time.sleep(10)", None, 200)

    assert r.timed_out
    assert r.termination_reason is Termination.TIMEOUT
    assert r.execution_time_ms == 200
    assert r.stdout == "start\n"
    assert r.stderr.endswith("\nExecution timed out")
    assert docker_client.containers.created[0].removed
    assert workspaces_left(storage) == []


def test_stdin_is_written_and_half_closed(executor, docker_client):
    sock = FakeSocket([encode_frame(STDOUT, b"42\n")])
    docker_client.next_socket = sock
    executor.execute(get_profile("python"), "print(input())", "42\n", 2_000)

    assert sock.sent == b"42\n"
    assert sock.shut
    assert sock.closed
    assert docker_client.workspace_files["input.txt"] == b"42\n"
    c = docker_client.containers.created[0]
    assert c.attach_params["stdin"] == 1
    assert c.config["stdin_open"] is True


def test_container_is_isolated_and_labelled(executor, docker_client):
    executor.execute(get_profile("cpp"), "int main(){}", None, 5_000, job_id="j9", session_id="s9")
    cfg = docker_client.containers.created[0].config

    assert cfg["image"] == "gcc:latest"
    assert cfg["network_mode"] == "none"
    assert cfg["read_only"] is True
    assert cfg["mem_limit"] == 128 * 1024 * 1024
    assert cfg["memswap_limit"] == cfg["mem_limit"]
    assert cfg["cpu_shares"] == 512
    assert cfg["pids_limit"] == 64
    assert "/tmp" in cfg["tmpfs"]
    assert cfg["cap_drop"] == ["ALL"]
    assert cfg["labels"][LABEL_JOB] == "j9"
    assert cfg["labels"][LABEL_SESSION] == "s9"
    assert list(cfg["volumes"].values())[0]["bind"] == "/workspace"


def test_create_failure_is_infrastructure_error(executor, docker_client, storage):
    docker_client.containers.create_error = APIError("no such image")
    with pytest.raises(SandboxUnavailable):
        executor.execute(get_profile("python"), "print(1)", None, 2_000)
    assert workspaces_left(storage) == []


def test_start_failure_still_removes_container(executor, docker_client, storage):
    docker_client.start_error = APIError("cannot start")
    with pytest.raises(SandboxUnavailable):
        executor.execute(get_profile("python"), "print(1)", None, 2_000)
    assert docker_client.containers.created[0].removed
    assert workspaces_left(storage) == []


def test_broken_stream_is_infrastructure_error(executor, docker_client, storage):
    docker_client.next_socket = FakeSocket([], error=ConnectionResetError("reset"))
    with pytest.raises(SandboxUnavailable):
        executor.execute(get_profile("python"), "print(1)", None, 2_000)
    assert docker_client.containers.created[0].removed
    assert workspaces_left(storage) == []


def test_kill_session_only_touches_that_session(executor, docker_client):
    for sid in ("a", "b", "a"):
        docker_client.next_socket = FakeSocket([])
        executor.execute(get_profile("python"), "print(1)", None, 2_000, session_id=sid)
    # pretend they are still running
    for c in docker_client.containers.created:
        c.removed = False
        c.status = "running"

    assert executor.kill_session("a") == 2
    killed = [c.labels[LABEL_SESSION] for c in docker_client.containers.created if c.killed]
    assert killed == ["a", "a"]
    assert executor.stats() == {"runningSandboxes": 1, "totalSandboxes": 3}


def test_ensure_images_reports_failures(executor, docker_client):
    docker_client.images.present = {"node:18-alpine"}
    docker_client.images.unpullable = {"rust:alpine"}
    missing = executor.ensure_images()

    assert missing == ["rust:alpine"]
    assert "node:18-alpine" not in docker_client.images.pulled
    assert "python:3.11-alpine" in docker_client.images.pulled
