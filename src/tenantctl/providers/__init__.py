"""Container runtime providers for tenantctl."""
from __future__ import annotations

from .docker import DockerProvider
from .memory import InMemoryRuntime
from .runtime import (
    CommandFailed,
    CommandResult,
    HealthStatus,
    NotFound,
    OperationCancelled,
    RuntimeAdapter,
    RuntimeAdapterError,
    RuntimeUnavailable,
)

__all__ = [
    "CommandFailed",
    "CommandResult",
    "DockerProvider",
    "HealthStatus",
    "InMemoryRuntime",
    "NotFound",
    "OperationCancelled",
    "RuntimeAdapter",
    "RuntimeAdapterError",
    "RuntimeUnavailable",
]
