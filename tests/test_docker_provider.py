"""Tests for the docker CLI provider."""
from __future__ import annotations

import io
import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from tenantctl.providers import docker as docker_module
from tenantctl.providers.docker import DockerProvider, classify_failure
from tenantctl.providers.runtime import (
    CommandFailed,
    HealthStatus,
    NotFound,
    OperationCancelled,
    RuntimeUnavailable,
)


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def _patch_run(
    monkeypatch: pytest.MonkeyPatch,
    result: DummyResult | BaseException,
) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run(args: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append(list(args))
        if isinstance(result, BaseException):
            raise result
        return result

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)
    return calls


def _stub_binary(tmp_path: Path, body: str) -> str:
    path = tmp_path / "docker"
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)
    return str(path)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Error: No such container: acme-web", NotFound),
        ("Error: No such object: acme-db", NotFound),
        ("Cannot connect to the Docker daemon at unix:///var/run/docker.sock.", RuntimeUnavailable),
        ("pull access denied for private/app", CommandFailed),
    ],
)
def test_classify_failure(output: str, expected: type[Exception]) -> None:
    """Docker error text maps onto the runtime error taxonomy."""
    error = classify_failure("docker inspect", 1, output)

    assert type(error) is expected
    assert output.strip() in str(error)


def test_start_stack_builds_compose_command(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Compose up passes the file, project and env file."""
    calls = _patch_run(monkeypatch, DummyResult())
    stack = tmp_path / "docker-compose.yml"
    env_file = tmp_path / ".env"
    env_file.write_text("A=1\n", encoding="utf-8")

    DockerProvider().start_stack(stack, "acme", env_file=env_file)

    assert calls == [
        [
            "docker",
            "compose",
            "-f",
            str(stack),
            "-p",
            "acme",
            "--env-file",
            str(env_file),
            "up",
            "-d",
        ]
    ]


def test_stop_stack_removes_orphans_and_volumes(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    """Compose down always removes orphans and optionally volumes."""
    calls = _patch_run(monkeypatch, DummyResult())
    stack = tmp_path / "docker-compose.yml"

    DockerProvider(docker_bin="/usr/bin/docker").stop_stack(stack, remove_volumes=True, project="acme")

    assert calls[0][-3:] == ["down", "--remove-orphans", "-v"]
    assert calls[0][0] == "/usr/bin/docker"


def test_is_running_reads_state(monkeypatch: pytest.MonkeyPatch) -> None:
    """``docker inspect`` output 'true' means running."""
    _patch_run(monkeypatch, DummyResult(stdout="true\n"))

    assert DockerProvider().is_running("acme-web") is True


def test_is_running_missing_container_is_false(monkeypatch: pytest.MonkeyPatch) -> None:
    """A container that does not exist is reported as not running."""
    _patch_run(monkeypatch, DummyResult(returncode=1, stderr="Error: No such object: acme-web"))

    assert DockerProvider().is_running("acme-web") is False


def test_is_running_daemon_down_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """An unreachable daemon is an error, never 'not running'."""
    _patch_run(
        monkeypatch,
        DummyResult(returncode=1, stderr="Cannot connect to the Docker daemon. Is the docker daemon running?"),
    )

    with pytest.raises(RuntimeUnavailable):
        DockerProvider().is_running("acme-web")


def test_missing_binary_is_runtime_unavailable(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing docker binary raises RuntimeUnavailable."""
    _patch_run(monkeypatch, FileNotFoundError("docker"))

    with pytest.raises(RuntimeUnavailable):
        DockerProvider().list_images()


def test_timeout_is_operation_cancelled(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """An elapsed deadline raises OperationCancelled."""
    _patch_run(monkeypatch, subprocess.TimeoutExpired(cmd="docker", timeout=1))

    with pytest.raises(OperationCancelled):
        DockerProvider(timeout=1).restart_stack(tmp_path / "docker-compose.yml", "acme")


@pytest.mark.parametrize(
    ("stdout", "expected"),
    [
        ("healthy\n", HealthStatus.HEALTHY),
        ("unhealthy\n", HealthStatus.UNHEALTHY),
        ("starting\n", HealthStatus.STARTING),
        ("none\n", HealthStatus.NONE),
    ],
)
def test_health_status_parses_probe(
    monkeypatch: pytest.MonkeyPatch,
    stdout: str,
    expected: HealthStatus,
) -> None:
    """Health templates map onto HealthStatus values."""
    _patch_run(monkeypatch, DummyResult(stdout=stdout))

    assert DockerProvider().health_status("acme-web") is expected


def test_list_images_splits_lines(monkeypatch: pytest.MonkeyPatch) -> None:
    """Image references are returned one per line."""
    _patch_run(monkeypatch, DummyResult(stdout="app:1.4\npostgres:16\n\n"))

    assert DockerProvider().list_images() == ["app:1.4", "postgres:16"]


def test_exec_in_container_returns_stdout(monkeypatch: pytest.MonkeyPatch) -> None:
    """One-shot exec returns the command output."""
    calls = _patch_run(monkeypatch, DummyResult(stdout="acme_db\n"))

    output = DockerProvider().exec_in_container("acme-db", ["psql", "-l"])

    assert output == "acme_db\n"
    assert calls == [["docker", "exec", "acme-db", "psql", "-l"]]


def test_exec_in_container_missing_container(monkeypatch: pytest.MonkeyPatch) -> None:
    """Exec into an unknown container raises NotFound."""
    _patch_run(monkeypatch, DummyResult(returncode=1, stderr="Error: No such container: ghost-db"))

    with pytest.raises(NotFound):
        DockerProvider().exec_in_container("ghost-db", ["true"])


def test_exec_to_stream_copies_stdout(tmp_path: Path) -> None:
    """Streaming exec copies the child's stdout into the sink."""
    docker_bin = _stub_binary(tmp_path, "printf 'dump-bytes'")
    sink = io.BytesIO()

    DockerProvider(docker_bin=docker_bin, timeout=10).exec_to_stream("acme-db", ["pg_dump"], sink)

    assert sink.getvalue() == b"dump-bytes"


def test_exec_to_stream_classifies_failures(tmp_path: Path) -> None:
    """Non-zero exits are classified from stderr."""
    docker_bin = _stub_binary(tmp_path, "echo 'Error: No such container: acme-db' >&2\nexit 1")

    with pytest.raises(NotFound):
        DockerProvider(docker_bin=docker_bin, timeout=10).exec_to_stream(
            "acme-db", ["pg_dump"], io.BytesIO()
        )


@pytest.mark.mutation_timeout
def test_exec_to_stream_deadline_cancels(tmp_path: Path) -> None:
    """A stream that outlives the timeout is killed and reported as cancelled."""
    docker_bin = _stub_binary(tmp_path, "exec sleep 5")

    with pytest.raises(OperationCancelled):
        DockerProvider(docker_bin=docker_bin, timeout=0.2).exec_to_stream(
            "acme-db", ["pg_dump"], io.BytesIO()
        )


def test_exec_from_stream_feeds_stdin(tmp_path: Path) -> None:
    """Streaming exec feeds the source into the child's stdin."""
    captured = tmp_path / "captured.sql"
    docker_bin = _stub_binary(tmp_path, f"cat > '{captured}'")

    DockerProvider(docker_bin=docker_bin, timeout=10).exec_from_stream(
        "acme-db", ["psql"], io.BytesIO(b"SELECT 1;\n")
    )

    assert captured.read_bytes() == b"SELECT 1;\n"


def test_stream_logs_yields_lines(tmp_path: Path) -> None:
    """Log lines are yielded lazily without trailing newlines."""
    docker_bin = _stub_binary(tmp_path, "printf 'one\\ntwo\\n'")

    lines = list(DockerProvider(docker_bin=docker_bin, timeout=10).stream_logs("acme-web", tail=2))

    assert lines == ["one", "two"]
