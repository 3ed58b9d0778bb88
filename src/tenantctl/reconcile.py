"""Compare the ledger against live container state. Read-only."""
from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .providers.runtime import HealthStatus, RuntimeAdapter, RuntimeAdapterError
from .state.ledger import LedgerEntry, LedgerStatus, StatusLedger
from .tenants import Tenant


class LiveHealth(str, Enum):
    """Observed state of one container."""

    HEALTHY = "healthy"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TenantHealth:
    """Ledger row paired with live web and database state."""

    tenant: str
    ledger: LedgerEntry
    web: LiveHealth
    db: LiveHealth
    errors: tuple[str, ...] = ()

    @property
    def drift(self) -> bool:
        """Return True when the ledger disagrees with the web container."""
        status = self.ledger.status
        if status is LedgerStatus.RUNNING:
            return self.web is LiveHealth.STOPPED
        if status is LedgerStatus.STOPPED:
            return self.web is not LiveHealth.STOPPED
        return False

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "tenant": self.tenant,
            "label": self.ledger.label,
            "ledger_status": self.ledger.status.value,
            "last_action": self.ledger.last_action,
            "timestamp": self.ledger.timestamp,
            "web": self.web.value,
            "db": self.db.value,
            "drift": self.drift,
            "errors": list(self.errors),
        }


@dataclass
class FleetStatus:
    """Health of every registered tenant plus orphaned ledger rows."""

    tenants: list[TenantHealth] = field(default_factory=list)
    orphans: list[LedgerEntry] = field(default_factory=list)

    @property
    def drifted(self) -> list[TenantHealth]:
        return [row for row in self.tenants if row.drift]

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "tenants": [row.to_dict() for row in self.tenants],
            "orphans": [entry.to_dict() for entry in self.orphans],
        }


class HealthReconciler:
    """Produce per-tenant health rows without mutating anything."""

    def __init__(self, ledger: StatusLedger, runtime: RuntimeAdapter) -> None:
        self.ledger = ledger
        self.runtime = runtime

    def status(self, tenant: Tenant, *, entries: dict[str, LedgerEntry] | None = None) -> TenantHealth:
        """Return the health row for *tenant*."""
        if entries is None:
            entry = self.ledger.get(tenant.name)
        else:
            entry = entries.get(tenant.name) or LedgerEntry.unknown(tenant.name)
        errors: list[str] = []
        web = self._probe(tenant.web_container, errors)
        db = self._probe(tenant.db_container, errors)
        return TenantHealth(tenant=tenant.name, ledger=entry, web=web, db=db, errors=tuple(errors))

    def status_all(self, tenants: Sequence[Tenant]) -> FleetStatus:
        """Return one row per tenant in the order supplied."""
        entries = self.ledger.read()
        rows = [self.status(tenant, entries=entries) for tenant in tenants]
        known = {tenant.name for tenant in tenants}
        orphans = [entry for name, entry in entries.items() if name not in known]
        return FleetStatus(tenants=rows, orphans=orphans)

    def _probe(self, container: str, errors: list[str]) -> LiveHealth:
        try:
            if not self.runtime.is_running(container):
                return LiveHealth.STOPPED
            health = self.runtime.health_status(container)
        except RuntimeAdapterError as exc:
            errors.append(f"{container}: {exc}")
            return LiveHealth.STOPPED
        if health is HealthStatus.HEALTHY:
            return LiveHealth.HEALTHY
        return LiveHealth.RUNNING


__all__ = ["FleetStatus", "HealthReconciler", "LiveHealth", "TenantHealth"]
