"""Container runtime interface consumed by tenantctl.

Everything that talks to the container runtime goes through an object
satisfying :class:`RuntimeAdapter`. The production binding lives in
:mod:`tenantctl.providers.docker`; :mod:`tenantctl.providers.memory` provides a
deterministic stand-in for tests.
"""
from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Protocol


class RuntimeAdapterError(RuntimeError):
    """Base class for container runtime failures."""


class RuntimeUnavailable(RuntimeAdapterError):
    """Raised when the runtime daemon or CLI cannot be reached."""


class NotFound(RuntimeAdapterError):
    """Raised when a named stack or container does not exist."""


class OperationCancelled(RuntimeAdapterError):
    """Raised when a runtime call exceeds its deadline or is cancelled."""


class CommandFailed(RuntimeAdapterError):
    """Raised when the runtime reports a non-zero exit for a command."""


class HealthStatus(str, Enum):
    """Health probe state reported for a container."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NONE = "none"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a runtime command that completed."""

    args: tuple[str, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""


class RuntimeAdapter(Protocol):
    """Operations tenantctl needs from the container runtime."""

    def is_running(self, container: str) -> bool:
        """Return True when *container* exists and is running."""
        ...

    def health_status(self, container: str) -> HealthStatus:
        """Return the health probe state of *container*."""
        ...

    def start_stack(
        self,
        stack_file: Path,
        project: str,
        *,
        env_file: Path | None = None,
    ) -> CommandResult:
        """Bring the stack described by *stack_file* up in the background."""
        ...

    def stop_stack(
        self,
        stack_file: Path,
        *,
        remove_volumes: bool = False,
        project: str | None = None,
    ) -> CommandResult:
        """Tear the stack down, optionally removing its volumes."""
        ...

    def restart_stack(self, stack_file: Path, project: str) -> CommandResult:
        """Restart every service of the stack in place."""
        ...

    def start_container(self, container: str) -> CommandResult:
        """Start a single existing container."""
        ...

    def stop_container(self, container: str) -> CommandResult:
        """Stop a single container."""
        ...

    def exec_in_container(self, container: str, args: Sequence[str]) -> str:
        """Run *args* inside *container* and return its standard output."""
        ...

    def exec_to_stream(self, container: str, args: Sequence[str], sink: BinaryIO) -> None:
        """Run *args* inside *container*, copying its stdout into *sink*."""
        ...

    def exec_from_stream(self, container: str, args: Sequence[str], source: BinaryIO) -> None:
        """Run *args* inside *container*, feeding *source* to its stdin."""
        ...

    def stream_logs(self, container: str, tail: int = 100) -> Iterator[str]:
        """Yield the last *tail* log lines of *container*."""
        ...

    def list_images(self) -> list[str]:
        """Return ``repository:tag`` references of local images."""
        ...


__all__ = [
    "CommandFailed",
    "CommandResult",
    "HealthStatus",
    "NotFound",
    "OperationCancelled",
    "RuntimeAdapter",
    "RuntimeAdapterError",
    "RuntimeUnavailable",
]
