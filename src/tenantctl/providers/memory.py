"""In-memory runtime used by the test-suite."""
from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from .runtime import (
    CommandResult,
    HealthStatus,
    NotFound,
    RuntimeAdapterError,
)


@dataclass
class FakeContainer:
    """State tracked for a single simulated container."""

    running: bool = False
    health: HealthStatus = HealthStatus.NONE
    logs: list[str] = field(default_factory=list)
    # Bytes returned by exec_to_stream; bytes received by exec_from_stream.
    output: bytes = b""
    received: bytes = b""


@dataclass
class InMemoryRuntime:
    """Deterministic :class:`~tenantctl.providers.runtime.RuntimeAdapter`.

    ``start_stack`` marks ``{project}-web`` and ``{project}-db`` running,
    ``stop_stack`` marks them stopped. Failures are injected per operation
    name via :meth:`fail`; every call is appended to :attr:`calls`.
    """

    containers: dict[str, FakeContainer] = field(default_factory=dict)
    images: list[str] = field(default_factory=list)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    failures: dict[tuple[str, str], RuntimeAdapterError] = field(default_factory=dict)

    # Test helpers ------------------------------------------------------
    def add_container(
        self,
        name: str,
        *,
        running: bool = True,
        health: HealthStatus = HealthStatus.NONE,
        output: bytes = b"",
        logs: Sequence[str] = (),
    ) -> FakeContainer:
        """Register a container and return its state object."""
        container = FakeContainer(running=running, health=health, output=output, logs=list(logs))
        self.containers[name] = container
        return container

    def fail(self, operation: str, target: str, error: RuntimeAdapterError) -> None:
        """Make *operation* on *target* raise *error*."""
        self.failures[(operation, target)] = error

    # Adapter surface ---------------------------------------------------
    def is_running(self, container: str) -> bool:
        self._record("is_running", container)
        state = self.containers.get(container)
        return bool(state and state.running)

    def health_status(self, container: str) -> HealthStatus:
        self._record("health_status", container)
        return self._container(container).health

    def start_stack(
        self,
        stack_file: Path,
        project: str,
        *,
        env_file: Path | None = None,
    ) -> CommandResult:
        self._record("start_stack", project)
        for name in (f"{project}-web", f"{project}-db"):
            self.containers.setdefault(name, FakeContainer()).running = True
        return CommandResult(args=("compose", "up", project))

    def stop_stack(
        self,
        stack_file: Path,
        *,
        remove_volumes: bool = False,
        project: str | None = None,
    ) -> CommandResult:
        label = project or stack_file.parent.name
        self._record("stop_stack", label)
        for name in (f"{label}-web", f"{label}-db"):
            if name in self.containers:
                self.containers[name].running = False
        return CommandResult(args=("compose", "down", label))

    def restart_stack(self, stack_file: Path, project: str) -> CommandResult:
        self._record("restart_stack", project)
        for name in (f"{project}-web", f"{project}-db"):
            self.containers.setdefault(name, FakeContainer()).running = True
        return CommandResult(args=("compose", "restart", project))

    def start_container(self, container: str) -> CommandResult:
        self._record("start_container", container)
        self._container(container).running = True
        return CommandResult(args=("start", container))

    def stop_container(self, container: str) -> CommandResult:
        self._record("stop_container", container)
        self._container(container).running = False
        return CommandResult(args=("stop", container))

    def exec_in_container(self, container: str, args: Sequence[str]) -> str:
        self._record("exec_in_container", container, *args)
        return self._container(container).output.decode("utf-8", errors="replace")

    def exec_to_stream(self, container: str, args: Sequence[str], sink: BinaryIO) -> None:
        self._record("exec_to_stream", container, *args)
        sink.write(self._container(container).output)

    def exec_from_stream(self, container: str, args: Sequence[str], source: BinaryIO) -> None:
        self._record("exec_from_stream", container, *args)
        self._container(container).received = source.read()

    def stream_logs(self, container: str, tail: int = 100) -> Iterator[str]:
        self._record("stream_logs", container)
        lines = self._container(container).logs
        return iter(lines[-tail:] if tail > 0 else [])

    def list_images(self) -> list[str]:
        self._record("list_images", "*")
        return list(self.images)

    # ------------------------------------------------------------------
    def _record(self, operation: str, target: str, *extra: str) -> None:
        self.calls.append((operation, target, *extra))
        error = self.failures.get((operation, target)) or self.failures.get((operation, "*"))
        if error is not None:
            raise error

    def _container(self, name: str) -> FakeContainer:
        try:
            return self.containers[name]
        except KeyError:
            raise NotFound(f"No such container: {name}") from None


__all__ = ["FakeContainer", "InMemoryRuntime"]
