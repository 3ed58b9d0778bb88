"""Structured operation logging for tenantctl.

Every CLI command runs inside an :class:`OperationScope`. When the scope
closes, one JSON record is appended to ``operations.jsonl`` and a single
human-readable line is written to ``tenantctl.log`` through the standard
:mod:`logging` machinery. Logging must never break a command: when the log
directory is unavailable or a write fails the logger disables itself and
carries on silently.
"""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from types import TracebackType

from . import __version__

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "tenantctl.log"
_HUMAN_LOGGER_NAME = "tenantctl.operations"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something :func:`json.dumps` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result for one CLI operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise an empty scope bound to *logger*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._started_at = _now_iso()
        self._started = time.perf_counter()

    # Context manager -----------------------------------------------
    def __enter__(self) -> OperationScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> bool:
        if self.result is None:
            if exc is None:
                self.success("Operation completed.", changed=0)
            elif _is_exit(exc):
                code = getattr(exc, "exit_code", 0)
                if code:
                    self.error(f"Command exited with code {code}.", rc=int(code))
                else:
                    self.success("Operation completed.", changed=0)
            else:
                self.error(f"Unhandled error: {exc}", errors=[repr(exc)], rc=1)
        self._logger._emit(self)
        return False

    # Recording helpers -----------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a named step with its *status* and optional *detail*."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation complete with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            changed=changed,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _json_safe(dict(context))
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable record for this operation."""
        return {
            "command": self.command,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "started_at": self._started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._started) * 1000),
            "steps": list(self.steps),
            "result": self.result or {},
            "context": {"tenantctl_version": __version__, "pid": os.getpid()},
        }


def _is_exit(exc: BaseException) -> bool:
    # click.exceptions.Exit (re-exported as typer.Exit) carries ``exit_code``.
    return type(exc).__name__ == "Exit" and hasattr(exc, "exit_code")


class StructuredLogger:
    """Write operation records to JSONL and a rotating human-readable log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling logging when unavailable."""
        self.logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG_NAME
        self._human_log_path = self.logs_dir / HUMAN_LOG_NAME
        self._enabled = True
        self._human: logging.Logger | None = None
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False
            return
        self._human = self._build_human_logger()

    def _build_human_logger(self) -> logging.Logger | None:
        logger = logging.getLogger(_HUMAN_LOGGER_NAME)
        logger.setLevel(logging.INFO)
        logger.propagate = False
        # One human log per process; a rebuilt logger releases the previous file.
        for existing in list(logger.handlers):
            logger.removeHandler(existing)
            existing.close()
        try:
            handler = RotatingFileHandler(
                self._human_log_path,
                maxBytes=1024 * 1024,
                backupCount=5,
                encoding="utf-8",
            )
        except OSError:
            return None
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(message)s"))
        logger.addHandler(handler)
        return logger

    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> OperationScope:
        """Return a new :class:`OperationScope` for *command*."""
        return OperationScope(self, command, args=args, target=target)

    def _emit(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False
            return

        if self._human is None:
            return
        result = record["result"]
        status = result.get("status", "unknown") if isinstance(result, Mapping) else "unknown"
        message = result.get("message", "") if isinstance(result, Mapping) else ""
        level = logging.ERROR if status == "error" else logging.INFO
        if status == "warning":
            level = logging.WARNING
        self._human.log(level, "%s [%s] %s", scope.command, status, message)


__all__ = ["OperationScope", "StructuredLogger"]
