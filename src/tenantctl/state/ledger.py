"""Durable deployment status ledger.

The ledger (``/var/lib/tenantctl/deployment_status.yml`` by default) keeps one
row per tenant describing the last recorded deployment state. The file is
always loaded and saved wholesale; updates go through a temporary file in the
same directory followed by an atomic :func:`os.replace`, so a concurrent
reader observes either the previous or the new ledger, never a mix.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

import yaml

from ..tenants import friendly_name


class LedgerError(RuntimeError):
    """Base class for ledger failures."""


class LedgerReadError(LedgerError):
    """Raised when the ledger file exists but cannot be parsed."""


class LedgerWriteError(LedgerError):
    """Raised when the ledger cannot be atomically replaced."""


class LedgerStatus(str, Enum):
    """Deployment states recorded in the ledger."""

    RUNNING = "Running"
    STOPPED = "Stopped"
    ERROR = "Error"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: object) -> LedgerStatus:
        """Return the status matching *value*, defaulting to ``Unknown``."""
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return cls.UNKNOWN


@dataclass(frozen=True)
class LedgerEntry:
    """A single ledger row."""

    tenant: str
    label: str
    status: LedgerStatus
    last_action: str
    timestamp: str

    @classmethod
    def unknown(cls, tenant: str) -> LedgerEntry:
        """Return the placeholder used for tenants without a row."""
        return cls(
            tenant=tenant,
            label=friendly_name(tenant),
            status=LedgerStatus.UNKNOWN,
            last_action="",
            timestamp="",
        )

    def to_dict(self) -> dict[str, str]:
        """Return the row as written to disk."""
        return {
            "tenant": self.tenant,
            "label": self.label,
            "status": self.status.value,
            "last_action": self.last_action,
            "timestamp": self.timestamp,
        }


def _timestamp() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


@dataclass(frozen=True)
class StatusLedger:
    """Key-by-tenant ledger with full-scan reads and atomic writes."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the ledger path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    def read(self) -> dict[str, LedgerEntry]:
        """Return the ledger as a mapping of tenant to entry."""
        entries: dict[str, LedgerEntry] = {}
        for row in self._load_rows():
            entry = _entry_from_row(row)
            if entry is not None:
                entries[entry.tenant] = entry
        return entries

    def get(self, tenant: str) -> LedgerEntry:
        """Return the entry for *tenant* (an ``Unknown`` placeholder if absent)."""
        return self.read().get(tenant) or LedgerEntry.unknown(tenant)

    def upsert(self, tenant: str, status: LedgerStatus, action: str) -> LedgerEntry:
        """Replace or append the row for *tenant* and persist atomically."""
        normalized = tenant.strip()
        if not normalized:
            raise LedgerWriteError("Tenant identifier must be a non-empty string.")
        entry = LedgerEntry(
            tenant=normalized,
            label=friendly_name(normalized),
            status=status,
            last_action=action,
            timestamp=_timestamp(),
        )

        try:
            current = self.read()
        except LedgerReadError as exc:
            raise LedgerWriteError(f"Refusing to replace unreadable ledger: {exc}") from exc

        rows: list[dict[str, str]] = []
        replaced = False
        for existing in current.values():
            if existing.tenant == normalized:
                rows.append(entry.to_dict())
                replaced = True
            else:
                rows.append(existing.to_dict())
        if not replaced:
            rows.append(entry.to_dict())

        self._write_rows(rows)
        return entry

    # ------------------------------------------------------------------
    def _load_rows(self) -> list[Mapping[str, object]]:
        if not self.path.exists():
            return []
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return []
        except (OSError, UnicodeDecodeError) as exc:
            raise LedgerReadError(f"Failed to read ledger {self.path}: {exc}") from exc
        except yaml.YAMLError as exc:
            raise LedgerReadError(f"Failed to parse ledger {self.path}: {exc}") from exc
        if data is None:
            return []
        if not isinstance(data, Mapping):
            raise LedgerReadError(f"Ledger {self.path} must contain a mapping.")
        raw_entries = data.get("entries", [])
        if not isinstance(raw_entries, list):
            raise LedgerReadError(f"Ledger {self.path} 'entries' must be a list.")
        return [row for row in raw_entries if isinstance(row, Mapping)]

    def _write_rows(self, rows: list[dict[str, str]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
            )
        except OSError as exc:
            raise LedgerWriteError(f"Failed to prepare ledger write: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump({"entries": rows}, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise LedgerWriteError(f"Failed to write ledger {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def _entry_from_row(row: Mapping[str, object]) -> LedgerEntry | None:
    tenant = str(row.get("tenant", "") or "").strip()
    if not tenant:
        return None
    label = str(row.get("label", "") or "").strip() or friendly_name(tenant)
    return LedgerEntry(
        tenant=tenant,
        label=label,
        status=LedgerStatus.parse(row.get("status")),
        last_action=str(row.get("last_action", "") or ""),
        timestamp=str(row.get("timestamp", "") or ""),
    )


__all__ = [
    "LedgerEntry",
    "LedgerError",
    "LedgerReadError",
    "LedgerStatus",
    "LedgerWriteError",
    "StatusLedger",
]
