"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
import typer

from tenantctl import __version__
from tenantctl.logging import HUMAN_LOG_NAME, StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    text = logger._operations_log_path.read_text(encoding="utf-8")  # type: ignore[attr-defined]
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)


def test_operation_record_shape(tmp_path: Path) -> None:
    """Records carry command, args, steps, result and version context."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "deploy",
        args={"name": "acme", "root": Path("/opt/tenants")},
        target={"kind": "tenant", "name": "acme"},
    ) as op:
        op.add_step("lifecycle.deploy", status="success", detail="Deployment successful")
        op.success("Deploy acme: ok", changed=1)

    (record,) = _records(logger)
    assert record["command"] == "deploy"
    assert record["args"] == {"name": "acme", "root": "/opt/tenants"}
    assert record["steps"] == [
        {"name": "lifecycle.deploy", "status": "success", "detail": "Deployment successful"}
    ]
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1
    assert record["context"]["tenantctl_version"] == __version__

    human = (tmp_path / "logs" / HUMAN_LOG_NAME).read_text(encoding="utf-8")
    assert "deploy [success] Deploy acme: ok" in human


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("demo") as op:
        op.warning(
            "warned",
            warnings=("note",),
            changed=1,
            backups=["acme_db_20250101_120000.sql.gz"],
            context={"path": Path("/var/lib"), "obj": Custom()},
        )

    result = _records(logger)[0]["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["backups"] == ["acme_db_20250101_120000.sql.gz"]
    assert result["context"] == {"path": "/var/lib", "obj": "<custom>"}


def test_unhandled_exception_recorded_and_reraised(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and propagate."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("demo"):
            raise ValueError("boom")

    result = _records(logger)[0]["result"]
    assert result["status"] == "error"
    assert result["rc"] == 1


def test_typer_exit_keeps_its_code(tmp_path: Path) -> None:
    """A non-zero typer.Exit is recorded with its exit code."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(typer.Exit):
        with logger.operation("demo"):
            raise typer.Exit(code=3)

    result = _records(logger)[0]["result"]
    assert result["status"] == "error"
    assert result["rc"] == 3


def test_rebuilt_logger_reuses_one_handler(tmp_path: Path) -> None:
    """A new logger closes the previous human log handler instead of leaking it."""
    first = StructuredLogger(tmp_path / "first")
    previous = list(first._human.handlers)  # type: ignore[attr-defined,union-attr]

    second = StructuredLogger(tmp_path / "second")
    human = second._human  # type: ignore[attr-defined]

    assert human is first._human  # type: ignore[attr-defined]
    assert len(human.handlers) == 1
    assert all(handler.stream is None for handler in previous)

    with second.operation("demo") as op:
        op.success("done", changed=0)

    assert "demo [success] done" in (tmp_path / "second" / HUMAN_LOG_NAME).read_text(encoding="utf-8")
