"""Docker provider binding the runtime interface to the ``docker`` CLI."""
from __future__ import annotations

import shutil
import subprocess
import tempfile
import threading
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, BinaryIO

from .runtime import (
    CommandFailed,
    CommandResult,
    HealthStatus,
    NotFound,
    OperationCancelled,
    RuntimeAdapterError,
    RuntimeUnavailable,
)

_NOT_FOUND_MARKERS = ("no such container", "no such object", "no such file", "not found")
_UNAVAILABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
)
_COPY_CHUNK = 1024 * 1024


def classify_failure(prefix: str, returncode: int, output: str) -> RuntimeAdapterError:
    """Map a failed docker invocation onto the runtime error taxonomy."""
    message = output.strip() or "no output"
    text = f"{prefix} failed (exit {returncode}): {message}"
    lowered = message.lower()
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return RuntimeUnavailable(text)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return NotFound(text)
    return CommandFailed(text)


@dataclass(slots=True)
class DockerProvider:
    """Drive stacks and containers through ``docker`` / ``docker compose``."""

    docker_bin: str = "docker"
    timeout: float | None = 300.0

    # Stack operations --------------------------------------------------
    def start_stack(
        self,
        stack_file: Path,
        project: str,
        *,
        env_file: Path | None = None,
    ) -> CommandResult:
        """Run ``docker compose up -d`` for the stack."""
        args = self._compose_args(stack_file, project)
        if env_file is not None and env_file.is_file():
            args.extend(["--env-file", str(env_file)])
        args.extend(["up", "-d"])
        return self._run(args, error_prefix=f"compose up {project}", cwd=stack_file.parent)

    def stop_stack(
        self,
        stack_file: Path,
        *,
        remove_volumes: bool = False,
        project: str | None = None,
    ) -> CommandResult:
        """Run ``docker compose down --remove-orphans`` for the stack."""
        args = self._compose_args(stack_file, project)
        args.extend(["down", "--remove-orphans"])
        if remove_volumes:
            args.append("-v")
        label = project or stack_file.parent.name
        return self._run(args, error_prefix=f"compose down {label}", cwd=stack_file.parent)

    def restart_stack(self, stack_file: Path, project: str) -> CommandResult:
        """Run ``docker compose restart`` for the stack."""
        args = self._compose_args(stack_file, project)
        args.append("restart")
        return self._run(args, error_prefix=f"compose restart {project}", cwd=stack_file.parent)

    # Container operations ----------------------------------------------
    def is_running(self, container: str) -> bool:
        """Return True when *container* exists and is running."""
        try:
            result = self._run(
                [self.docker_bin, "inspect", "-f", "{{.State.Running}}", container],
                error_prefix=f"inspect {container}",
            )
        except NotFound:
            return False
        return result.stdout.strip().lower() == "true"

    def health_status(self, container: str) -> HealthStatus:
        """Return the container's health probe state."""
        template = "{{if .State.Health}}{{.State.Health.Status}}{{else}}none{{end}}"
        result = self._run(
            [self.docker_bin, "inspect", "-f", template, container],
            error_prefix=f"inspect {container}",
        )
        value = result.stdout.strip().lower()
        for member in HealthStatus:
            if member.value == value:
                return member
        return HealthStatus.NONE

    def start_container(self, container: str) -> CommandResult:
        """Start an existing container."""
        return self._run([self.docker_bin, "start", container], error_prefix=f"start {container}")

    def stop_container(self, container: str) -> CommandResult:
        """Stop a running container."""
        return self._run([self.docker_bin, "stop", container], error_prefix=f"stop {container}")

    def exec_in_container(self, container: str, args: Sequence[str]) -> str:
        """Run *args* inside *container* and return standard output."""
        result = self._run(
            [self.docker_bin, "exec", container, *args],
            error_prefix=f"exec {container}",
        )
        return result.stdout

    def exec_to_stream(self, container: str, args: Sequence[str], sink: BinaryIO) -> None:
        """Copy the stdout of ``docker exec`` into *sink* chunk by chunk."""
        command = [self.docker_bin, "exec", container, *args]
        with tempfile.TemporaryFile() as stderr:
            process = self._spawn(command, stdout=subprocess.PIPE, stderr=stderr)
            watchdog = self._watchdog(process)
            try:
                if process.stdout is None:
                    raise RuntimeUnavailable(f"{self.docker_bin} exec {container}: no stdout pipe")
                shutil.copyfileobj(process.stdout, sink, _COPY_CHUNK)
                process.stdout.close()
                returncode = process.wait()
            finally:
                cancelled = self._stop_watchdog(watchdog, process)
            self._check_stream(command, f"exec {container}", returncode, cancelled, stderr)

    def exec_from_stream(self, container: str, args: Sequence[str], source: BinaryIO) -> None:
        """Feed *source* to the stdin of ``docker exec -i``."""
        command = [self.docker_bin, "exec", "-i", container, *args]
        with tempfile.TemporaryFile() as stderr:
            process = self._spawn(
                command,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr,
            )
            watchdog = self._watchdog(process)
            try:
                if process.stdin is None:
                    raise RuntimeUnavailable(f"{self.docker_bin} exec -i {container}: no stdin pipe")
                try:
                    shutil.copyfileobj(source, process.stdin, _COPY_CHUNK)
                    process.stdin.close()
                except BrokenPipeError:
                    pass
                returncode = process.wait()
            finally:
                cancelled = self._stop_watchdog(watchdog, process)
            self._check_stream(command, f"exec -i {container}", returncode, cancelled, stderr)

    def stream_logs(self, container: str, tail: int = 100) -> Iterator[str]:
        """Yield the last *tail* log lines of *container*."""
        command = [self.docker_bin, "logs", "--tail", str(tail), container]
        process = self._spawn(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
        )
        last_line = ""
        try:
            if process.stdout is None:
                raise RuntimeUnavailable(f"{self.docker_bin} logs {container}: no stdout pipe")
            for line in process.stdout:
                last_line = line
                yield line.rstrip("\n")
            returncode = process.wait()
        finally:
            if process.poll() is None:
                process.kill()
                process.wait()
        if returncode != 0:
            raise classify_failure(f"{self.docker_bin} logs {container}", returncode, last_line)

    def list_images(self) -> list[str]:
        """Return ``repository:tag`` references of local images."""
        result = self._run(
            [self.docker_bin, "image", "ls", "--format", "{{.Repository}}:{{.Tag}}"],
            error_prefix="image ls",
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    def _compose_args(self, stack_file: Path, project: str | None) -> list[str]:
        args = [self.docker_bin, "compose", "-f", str(stack_file)]
        if project:
            args.extend(["-p", project])
        return args

    def _run(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        cwd: Path | None = None,
    ) -> CommandResult:
        try:
            result = subprocess.run(  # noqa: S603 - controlled command execution
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=self.timeout,
                cwd=str(cwd) if cwd is not None else None,
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailable(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise OperationCancelled(
                f"{self.docker_bin} {error_prefix} timed out after {self.timeout}s"
            ) from exc
        completed = CommandResult(
            args=tuple(args),
            returncode=result.returncode,
            stdout=result.stdout or "",
            stderr=result.stderr or "",
        )
        if result.returncode != 0:
            output = completed.stderr.strip() or completed.stdout.strip()
            raise classify_failure(f"{self.docker_bin} {error_prefix}", result.returncode, output)
        return completed

    def _spawn(self, command: Sequence[str], **kwargs: object) -> subprocess.Popen:  # type: ignore[type-arg]
        try:
            return subprocess.Popen(list(command), **kwargs)  # type: ignore[call-overload]  # noqa: S603
        except FileNotFoundError as exc:
            raise RuntimeUnavailable(f"{command[0]} not found: {exc}") from exc

    def _watchdog(self, process: subprocess.Popen) -> tuple[threading.Timer, threading.Event] | None:  # type: ignore[type-arg]
        if self.timeout is None:
            return None
        fired = threading.Event()

        def _expire() -> None:
            fired.set()
            process.kill()

        timer = threading.Timer(self.timeout, _expire)
        timer.daemon = True
        timer.start()
        return timer, fired

    @staticmethod
    def _stop_watchdog(
        watchdog: tuple[threading.Timer, threading.Event] | None,
        process: subprocess.Popen,  # type: ignore[type-arg]
    ) -> bool:
        if process.poll() is None:
            process.kill()
            process.wait()
        if watchdog is None:
            return False
        timer, fired = watchdog
        timer.cancel()
        return fired.is_set()

    def _check_stream(
        self,
        command: Sequence[str],
        prefix: str,
        returncode: int,
        cancelled: bool,
        stderr: IO[bytes],
    ) -> None:
        if cancelled:
            raise OperationCancelled(f"{command[0]} {prefix} timed out after {self.timeout}s")
        if returncode == 0:
            return
        stderr.seek(0)
        output = stderr.read().decode("utf-8", errors="replace")
        raise classify_failure(f"{command[0]} {prefix}", returncode, output)


__all__ = ["DockerProvider", "classify_failure"]
