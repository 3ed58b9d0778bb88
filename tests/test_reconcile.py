"""Tests for ledger versus live health reconciliation."""
from __future__ import annotations

from pathlib import Path

from tenantctl.providers.memory import InMemoryRuntime
from tenantctl.providers.runtime import HealthStatus, RuntimeUnavailable
from tenantctl.reconcile import HealthReconciler, LiveHealth
from tenantctl.state import LedgerStatus, StatusLedger
from tenantctl.tenants import discover, load_tenant


def test_status_reports_health_levels(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Healthy, running and stopped containers map onto LiveHealth."""
    make_tenant("acme")
    runtime.add_container("acme-web", health=HealthStatus.HEALTHY)
    runtime.add_container("acme-db", health=HealthStatus.NONE)
    ledger.upsert("acme", LedgerStatus.RUNNING, "Deployment successful")

    row = HealthReconciler(ledger, runtime).status(load_tenant(tenants_root, "acme"))

    assert row.web is LiveHealth.HEALTHY
    assert row.db is LiveHealth.RUNNING
    assert row.drift is False


def test_drift_when_ledger_running_but_web_stopped(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A Running ledger row with no live web container is drift."""
    make_tenant("acme")
    ledger.upsert("acme", LedgerStatus.RUNNING, "Deployment successful")

    row = HealthReconciler(ledger, runtime).status(load_tenant(tenants_root, "acme"))

    assert row.web is LiveHealth.STOPPED
    assert row.drift is True


def test_drift_when_ledger_stopped_but_web_running(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A Stopped ledger row with a live web container is drift."""
    make_tenant("acme")
    runtime.add_container("acme-web")
    ledger.upsert("acme", LedgerStatus.STOPPED, "Stopped by user")

    row = HealthReconciler(ledger, runtime).status(load_tenant(tenants_root, "acme"))

    assert row.drift is True


def test_runtime_errors_reported_as_stopped_without_writes(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Probe failures are recorded on the row and nothing is persisted."""
    make_tenant("acme")
    runtime.fail("is_running", "*", RuntimeUnavailable("daemon down"))

    row = HealthReconciler(ledger, runtime).status(load_tenant(tenants_root, "acme"))

    assert row.web is LiveHealth.STOPPED
    assert row.db is LiveHealth.STOPPED
    assert len(row.errors) == 2
    assert row.ledger.status is LedgerStatus.UNKNOWN
    assert not ledger.path.exists()


def test_status_all_keeps_order_and_reports_orphans(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Rows follow registry order; ledger rows without a tenant are orphans."""
    make_tenant("beta")
    make_tenant("acme")
    ledger.upsert("retired", LedgerStatus.STOPPED, "Stopped by user")
    ledger.upsert("beta", LedgerStatus.RUNNING, "Deployment successful")

    fleet = HealthReconciler(ledger, runtime).status_all(discover(tenants_root))

    assert [row.tenant for row in fleet.tenants] == ["acme", "beta"]
    assert [entry.tenant for entry in fleet.orphans] == ["retired"]
    assert [row.tenant for row in fleet.drifted] == ["beta"]
    payload = fleet.to_dict()
    assert payload["tenants"][0]["ledger_status"] == "Unknown"
