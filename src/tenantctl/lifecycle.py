"""Deploy, stop, and restart tenant stacks while keeping the ledger current.

Every operation is recorded in the status ledger before it returns. Bulk
operations take one registry snapshot before starting, run sequentially, and
never abort on a single tenant's failure.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .providers.runtime import OperationCancelled, RuntimeAdapter, RuntimeAdapterError
from .state.ledger import LedgerStatus, LedgerWriteError, StatusLedger
from .tenants import Tenant, discover, missing_secrets

log = logging.getLogger(__name__)

CANCELLED_REASON = "Cancelled"
DEPLOY_SCRIPT_MISSING = "Deploy script missing"
STACK_FILE_MISSING = "Compose file missing"
SECRETS_MISSING = "Secrets missing"
PRECONDITION_REASONS = frozenset({DEPLOY_SCRIPT_MISSING, STACK_FILE_MISSING, SECRETS_MISSING})


class Action(str, Enum):
    """Lifecycle actions applied to a tenant."""

    DEPLOY = "Deploy"
    STOP = "Stop"
    RESTART = "Restart"
    BACKUP = "Backup"


@dataclass(frozen=True)
class OperationResult:
    """Outcome of one lifecycle action against one tenant."""

    tenant: str
    action: Action
    succeeded: bool
    reason: str = ""

    @property
    def message(self) -> str:
        """Return a one-line summary for console output."""
        if self.succeeded:
            return f"{self.action.value} {self.tenant}: ok"
        return f"{self.action.value} {self.tenant}: {self.reason}"


@dataclass
class BulkReport:
    """Tally of a bulk operation over a registry snapshot."""

    succeeded: int = 0
    failed: int = 0
    results: list[OperationResult] = field(default_factory=list)

    def record(self, result: OperationResult) -> None:
        """Append *result* and update the counters."""
        self.results.append(result)
        if result.succeeded:
            self.succeeded += 1
        else:
            self.failed += 1

    @property
    def total(self) -> int:
        """Return the number of tenants attempted."""
        return self.succeeded + self.failed

    @property
    def failures(self) -> list[OperationResult]:
        """Return only the failed results."""
        return [result for result in self.results if not result.succeeded]


TenantSource = Callable[[], list[Tenant]]


class LifecycleController:
    """Drive tenant stacks through the runtime adapter."""

    def __init__(
        self,
        ledger: StatusLedger,
        runtime: RuntimeAdapter,
        tenants_root: Path | None = None,
        *,
        registry: TenantSource | None = None,
        cancel: threading.Event | None = None,
    ) -> None:
        """Bind the controller to its collaborators.

        Either *tenants_root* or a *registry* callable must be supplied for
        the bulk operations; single-tenant operations take the tenant
        explicitly.
        """
        self.ledger = ledger
        self.runtime = runtime
        self.tenants_root = tenants_root
        self._registry = registry
        self.cancel = cancel or threading.Event()

    # Single tenant -----------------------------------------------------
    def deploy_one(self, tenant: Tenant) -> OperationResult:
        """Bring *tenant*'s stack up and record the outcome."""
        if not tenant.deploy_script.is_file():
            return self._fail(tenant, Action.DEPLOY, DEPLOY_SCRIPT_MISSING)
        if not tenant.stack_file.is_file():
            return self._fail(tenant, Action.DEPLOY, STACK_FILE_MISSING)
        if missing_secrets(tenant):
            return self._fail(tenant, Action.DEPLOY, SECRETS_MISSING)
        if self.cancel.is_set():
            return self._fail(tenant, Action.DEPLOY, CANCELLED_REASON)
        try:
            self.runtime.start_stack(tenant.stack_file, tenant.name, env_file=tenant.env_file)
        except OperationCancelled:
            return self._fail(tenant, Action.DEPLOY, CANCELLED_REASON)
        except RuntimeAdapterError as exc:
            return self._fail(tenant, Action.DEPLOY, f"Deployment failed: {exc}")
        # A started stack is recorded as Running without waiting for health.
        return self._succeed(tenant, Action.DEPLOY, LedgerStatus.RUNNING, "Deployment successful")

    def stop_one(self, tenant: Tenant) -> OperationResult:
        """Tear *tenant*'s stack down and record the outcome."""
        if not tenant.stack_file.is_file():
            return self._fail(tenant, Action.STOP, STACK_FILE_MISSING)
        if self.cancel.is_set():
            return self._fail(tenant, Action.STOP, CANCELLED_REASON)
        try:
            self.runtime.stop_stack(tenant.stack_file, project=tenant.name)
        except OperationCancelled:
            return self._fail(tenant, Action.STOP, CANCELLED_REASON)
        except RuntimeAdapterError as exc:
            return self._fail(tenant, Action.STOP, f"Stop failed: {exc}")
        return self._succeed(tenant, Action.STOP, LedgerStatus.STOPPED, "Stopped by user")

    def restart(self, tenant: Tenant) -> OperationResult:
        """Restart *tenant*'s services in place."""
        if not tenant.stack_file.is_file():
            return self._fail(tenant, Action.RESTART, STACK_FILE_MISSING)
        if self.cancel.is_set():
            return self._fail(tenant, Action.RESTART, CANCELLED_REASON)
        try:
            self.runtime.restart_stack(tenant.stack_file, tenant.name)
        except OperationCancelled:
            return self._fail(tenant, Action.RESTART, CANCELLED_REASON)
        except RuntimeAdapterError as exc:
            return self._fail(tenant, Action.RESTART, f"Restart failed: {exc}")
        return self._succeed(tenant, Action.RESTART, LedgerStatus.RUNNING, "Restarted")

    def logs(self, tenant: Tenant, tail: int = 100, *, service: str = "web") -> Iterator[str]:
        """Yield recent log lines for one of *tenant*'s containers."""
        container = tenant.db_container if service == "db" else tenant.web_container
        return self.runtime.stream_logs(container, tail=tail)

    # Bulk --------------------------------------------------------------
    def deploy_all(self, tenants: Sequence[Tenant] | None = None) -> BulkReport:
        """Deploy every tenant in one registry snapshot."""
        return self._bulk(self.deploy_one, tenants)

    def stop_all(self, tenants: Sequence[Tenant] | None = None) -> BulkReport:
        """Stop every tenant in one registry snapshot."""
        return self._bulk(self.stop_one, tenants)

    def snapshot(self) -> list[Tenant]:
        """Return the current registry contents."""
        if self._registry is not None:
            return list(self._registry())
        if self.tenants_root is None:
            return []
        return discover(self.tenants_root)

    # ------------------------------------------------------------------
    def _bulk(
        self,
        operation: Callable[[Tenant], OperationResult],
        tenants: Sequence[Tenant] | None,
    ) -> BulkReport:
        snapshot = list(tenants) if tenants is not None else self.snapshot()
        report = BulkReport()
        for tenant in snapshot:
            report.record(operation(tenant))
        return report

    def _succeed(
        self,
        tenant: Tenant,
        action: Action,
        status: LedgerStatus,
        message: str,
    ) -> OperationResult:
        try:
            self.ledger.upsert(tenant.name, status, message)
        except LedgerWriteError as exc:
            log.error("Ledger write failed for %s after %s: %s", tenant.name, action.value, exc)
            return OperationResult(tenant.name, action, False, f"Ledger write failed: {exc}")
        log.info("%s %s: %s", action.value, tenant.name, message)
        return OperationResult(tenant.name, action, True, message)

    def _fail(self, tenant: Tenant, action: Action, reason: str) -> OperationResult:
        log.warning("%s %s failed: %s", action.value, tenant.name, reason)
        try:
            self.ledger.upsert(tenant.name, LedgerStatus.ERROR, reason)
        except LedgerWriteError as exc:
            reason = f"{reason}; ledger write failed: {exc}"
        return OperationResult(tenant.name, action, False, reason)


__all__ = [
    "Action",
    "BulkReport",
    "CANCELLED_REASON",
    "LifecycleController",
    "OperationResult",
    "PRECONDITION_REASONS",
    "SECRETS_MISSING",
]
