"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from tenantctl.providers.memory import InMemoryRuntime
from tenantctl.state import StatusLedger

TenantFactory = Callable[..., Path]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def tenants_root(tmp_path: Path) -> Path:
    """Return an empty tenants root under the temporary path."""
    root = tmp_path / "tenants"
    root.mkdir()
    return root


@pytest.fixture
def make_tenant(tenants_root: Path) -> TenantFactory:
    """Return a factory that lays out a tenant directory on disk."""

    def _make(
        name: str,
        *,
        env: bool = True,
        stack: bool = True,
        deploy_script: bool = True,
        secrets: bool = True,
        env_lines: tuple[str, ...] = (),
    ) -> Path:
        path = tenants_root / name
        path.mkdir(parents=True, exist_ok=True)
        if env:
            lines = [
                f"CLIENT_NAME={name}",
                f"CLIENT_DOMAIN={name}.example.com",
                "APP_IMAGE=registry.example.com/app:1.4",
                "APP_PORT=8000",
                f"POSTGRES_DB={name}_db",
                "POSTGRES_USER=app",
                "POSTGRES_PASSWORD=s3cret",
                *env_lines,
            ]
            (path / ".env").write_text("\n".join(lines) + "\n", encoding="utf-8")
        if stack:
            (path / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
        if deploy_script:
            script = path / "deploy.sh"
            script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
            script.chmod(0o755)
        if secrets:
            secrets_dir = path / "secrets"
            secrets_dir.mkdir(exist_ok=True)
            (secrets_dir / "postgres_user.txt").write_text("app\n", encoding="utf-8")
            (secrets_dir / "postgres_password.txt").write_text("s3cret\n", encoding="utf-8")
        return path

    return _make


@pytest.fixture
def runtime() -> InMemoryRuntime:
    """Return a fresh in-memory container runtime."""
    return InMemoryRuntime()


@pytest.fixture
def ledger(tmp_path: Path) -> StatusLedger:
    """Return a ledger stored under the temporary state directory."""
    return StatusLedger(tmp_path / "state" / "deployment_status.yml")
