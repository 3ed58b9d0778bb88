"""Tests for the lifecycle controller."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from tenantctl.lifecycle import SECRETS_MISSING, Action, LifecycleController
from tenantctl.providers.memory import InMemoryRuntime
from tenantctl.providers.runtime import CommandFailed, OperationCancelled, RuntimeUnavailable
from tenantctl.state import LedgerStatus, LedgerWriteError, StatusLedger
from tenantctl.tenants import discover, load_tenant


@pytest.fixture
def controller(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
) -> LifecycleController:
    """Return a controller bound to the in-memory runtime."""
    return LifecycleController(ledger, runtime, tenants_root)


def test_deploy_one_marks_running(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A successful start records Running and brings containers up."""
    make_tenant("acme")
    tenant = load_tenant(tenants_root, "acme")

    result = controller.deploy_one(tenant)

    assert result.succeeded is True
    assert result.action is Action.DEPLOY
    entry = ledger.get("acme")
    assert entry.status is LedgerStatus.RUNNING
    assert entry.last_action == "Deployment successful"
    assert runtime.is_running("acme-web")
    assert ("start_stack", "acme") in runtime.calls


def test_deploy_all_counts_partial_failures(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    make_tenant,
) -> None:
    """One tenant without a deploy script fails without aborting the batch."""
    make_tenant("acme")
    make_tenant("beta", deploy_script=False)

    report = controller.deploy_all()

    assert (report.succeeded, report.failed) == (1, 1)
    assert ledger.get("acme").status is LedgerStatus.RUNNING
    beta = ledger.get("beta")
    assert beta.status is LedgerStatus.ERROR
    assert "missing" in beta.last_action.lower()
    assert ("start_stack", "beta") not in runtime.calls


def test_deploy_runtime_failure_records_error(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Adapter failures become Failed results and an Error ledger row."""
    make_tenant("acme")
    runtime.fail("start_stack", "acme", CommandFailed("image pull failed"))

    result = controller.deploy_one(load_tenant(tenants_root, "acme"))

    assert result.succeeded is False
    entry = ledger.get("acme")
    assert entry.status is LedgerStatus.ERROR
    assert entry.last_action.startswith("Deployment failed:")


def test_stop_one_marks_stopped(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A successful stop records Stopped by user."""
    make_tenant("acme")
    tenant = load_tenant(tenants_root, "acme")
    controller.deploy_one(tenant)

    result = controller.stop_one(tenant)

    assert result.succeeded is True
    entry = ledger.get("acme")
    assert entry.status is LedgerStatus.STOPPED
    assert entry.last_action == "Stopped by user"
    assert not runtime.is_running("acme-web")


def test_stop_unreachable_runtime_is_error_not_stopped(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """An unreachable runtime is a failure, never an implicit stop."""
    make_tenant("acme")
    runtime.fail("stop_stack", "acme", RuntimeUnavailable("daemon down"))

    result = controller.stop_one(load_tenant(tenants_root, "acme"))

    assert result.succeeded is False
    assert ledger.get("acme").status is LedgerStatus.ERROR
    assert ledger.get("acme").last_action.startswith("Stop failed:")


def test_restart_never_records_stopped(
    controller: LifecycleController,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Restart records Running on success."""
    make_tenant("acme")

    result = controller.restart(load_tenant(tenants_root, "acme"))

    assert result.succeeded is True
    assert ledger.get("acme").status is LedgerStatus.RUNNING
    assert ledger.get("acme").last_action == "Restarted"


def test_stop_all_uses_single_snapshot(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Tenants created mid-batch are not picked up by the running batch."""
    make_tenant("acme")
    make_tenant("beta")
    calls: list[int] = []

    def registry():
        calls.append(1)
        return discover(tenants_root)

    controller = LifecycleController(ledger, runtime, registry=registry)
    original_stop = runtime.stop_stack

    def stop_and_add(stack_file, *, remove_volumes=False, project=None):
        make_tenant("gamma")
        return original_stop(stack_file, remove_volumes=remove_volumes, project=project)

    runtime.stop_stack = stop_and_add  # type: ignore[method-assign]

    report = controller.stop_all()

    assert calls == [1]
    assert [result.tenant for result in report.results] == ["acme", "beta"]
    assert report.succeeded == 2


def test_cancel_event_fails_remaining_tenants(
    ledger: StatusLedger,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A set cancel event fails the operation with Cancelled and no adapter call."""
    make_tenant("acme")
    cancel = threading.Event()
    cancel.set()
    controller = LifecycleController(ledger, runtime, tenants_root, cancel=cancel)

    report = controller.deploy_all()

    assert report.failed == 1
    assert report.results[0].reason == "Cancelled"
    assert ledger.get("acme").status is LedgerStatus.ERROR
    assert not any(call[0] == "start_stack" for call in runtime.calls)


def test_adapter_timeout_reports_cancelled(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """An elapsed runtime deadline is reported as Cancelled."""
    make_tenant("acme")
    runtime.fail("start_stack", "acme", OperationCancelled("timed out"))

    result = controller.deploy_one(load_tenant(tenants_root, "acme"))

    assert result.succeeded is False
    assert result.reason == "Cancelled"


def test_ledger_write_failure_fails_operation(
    controller: LifecycleController,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A runtime success that cannot be recorded is reported as a failure."""
    make_tenant("acme")

    def fail_upsert(self: StatusLedger, tenant: str, status: LedgerStatus, action: str):
        raise LedgerWriteError("disk full")

    monkeypatch.setattr(StatusLedger, "upsert", fail_upsert)

    result = controller.deploy_one(load_tenant(tenants_root, "acme"))

    assert result.succeeded is False
    assert "ledger write failed" in result.reason.lower()


def test_corrupt_ledger_fails_each_tenant_without_aborting(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    make_tenant,
) -> None:
    """An unreadable ledger turns every result into a counted failure."""
    make_tenant("acme")
    make_tenant("beta")
    ledger.path.parent.mkdir(parents=True, exist_ok=True)
    ledger.path.write_text("entries: [unclosed\n", encoding="utf-8")

    report = controller.deploy_all()

    assert (report.succeeded, report.failed) == (0, 2)
    assert ("start_stack", "acme") in runtime.calls
    assert ("start_stack", "beta") in runtime.calls
    assert all("ledger write failed" in result.reason.lower() for result in report.results)
    assert ledger.path.read_text(encoding="utf-8") == "entries: [unclosed\n"


def test_deploy_requires_database_secrets(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    ledger: StatusLedger,
    tenants_root: Path,
    make_tenant,
) -> None:
    """A tenant without its secret files is never started."""
    make_tenant("acme", secrets=False)

    result = controller.deploy_one(load_tenant(tenants_root, "acme"))

    assert result.succeeded is False
    assert result.reason == SECRETS_MISSING
    assert ledger.get("acme").status is LedgerStatus.ERROR
    assert ("start_stack", "acme") not in runtime.calls


def test_logs_streams_selected_container(
    controller: LifecycleController,
    runtime: InMemoryRuntime,
    tenants_root: Path,
    make_tenant,
) -> None:
    """Logs are read from the web container unless db is requested."""
    make_tenant("acme")
    runtime.add_container("acme-web", logs=["one", "two", "three"])
    runtime.add_container("acme-db", logs=["db ready"])
    tenant = load_tenant(tenants_root, "acme")

    assert list(controller.logs(tenant, tail=2)) == ["two", "three"]
    assert list(controller.logs(tenant, service="db")) == ["db ready"]
