"""Point-in-time backups of tenant databases and the edge certificate store.

Archives live flat under the backups root and are identified purely by file
name::

    traefik_acme_20250101_120000.tar.gz      edge proxy certificate store
    acme_db_20250101_120000.sql.gz           gzip'd SQL dump of tenant "acme"

Archives are written to a hidden temporary name in the same directory and
renamed into place once complete, so a listed archive is never partial.
Destructive actions (restore, cleanup) go through an injected ``confirm``
callable.
"""
from __future__ import annotations

import gzip
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .archive import ArchiveError, create_archive, extract_archive
from .lifecycle import Action, BulkReport, OperationResult
from .providers.runtime import RuntimeAdapter, RuntimeAdapterError
from .tenants import (
    EnvMissingError,
    Tenant,
    TenantNotFoundError,
    TenantRegistryError,
    database_credentials,
    discover,
    load_env,
    load_tenant,
)

log = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
CERT_ARCHIVE_PREFIX = "traefik_acme_"
CERT_FILE_NAME = "acme.json"
OLD_SUFFIX = ".old"

_CERT_PATTERN = re.compile(r"^traefik_acme_(?P<ts>\d{8}_\d{6})\.tar\.gz$")
_TENANT_PATTERN = re.compile(r"^(?P<tenant>.+)_db_(?P<ts>\d{8}_\d{6})\.sql\.gz$")

ConfirmCallback = Callable[[str], bool]


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class CertStoreMissingError(BackupError):
    """Raised when the edge proxy certificate directory does not exist."""


class ContainerNotRunningError(BackupError):
    """Raised when a tenant database container is not running."""


class UnknownArchiveTypeError(BackupError):
    """Raised when a file name matches no known archive pattern."""


class ArchiveNotFoundError(BackupError):
    """Raised when the archive to restore does not exist."""


class ArchiveSubject(str, Enum):
    """What an archive contains."""

    EDGE_CERT_STORE = "edge_cert_store"
    TENANT_DATA = "tenant_data"


@dataclass(frozen=True)
class ArchiveName:
    """Parsed components of an archive file name."""

    subject: ArchiveSubject
    created_at: datetime
    tenant: str | None = None


@dataclass(frozen=True)
class BackupArchive:
    """An archive file on disk."""

    subject: ArchiveSubject
    path: Path
    created_at: datetime
    size_bytes: int
    tenant: str | None = None
    readable: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-friendly representation."""
        return {
            "subject": self.subject.value,
            "tenant": self.tenant,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(timespec="seconds"),
            "size_bytes": self.size_bytes,
            "readable": self.readable,
        }


@dataclass
class RestoreResult:
    """Outcome of a restore request."""

    archive: Path
    subject: ArchiveSubject
    performed: bool
    tenant: str | None = None
    warnings: list[str] = field(default_factory=list)


def parse_archive_name(name: str) -> ArchiveName | None:
    """Return the parsed archive name, or ``None`` when unrecognised."""
    match = _CERT_PATTERN.match(name)
    if match:
        created = _parse_timestamp(match.group("ts"))
        if created is not None:
            return ArchiveName(ArchiveSubject.EDGE_CERT_STORE, created)
        return None
    match = _TENANT_PATTERN.match(name)
    if match:
        created = _parse_timestamp(match.group("ts"))
        if created is not None:
            return ArchiveName(ArchiveSubject.TENANT_DATA, created, match.group("tenant"))
    return None


def _parse_timestamp(value: str) -> datetime | None:
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _decline(prompt: str) -> bool:
    return False


class BackupManager:
    """Create, list, restore, and prune backup archives."""

    def __init__(
        self,
        root: Path,
        runtime: RuntimeAdapter,
        *,
        tenants_root: Path,
        cert_store: Path,
        proxy_container: str = "traefik",
        confirm: ConfirmCallback | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.root = Path(root).expanduser()
        self.runtime = runtime
        self.tenants_root = Path(tenants_root).expanduser()
        self.cert_store = Path(cert_store).expanduser()
        self.proxy_container = proxy_container
        self.confirm = confirm or _decline
        self._clock = clock or datetime.now

    # Paths -------------------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def archive_path(
        self,
        subject: ArchiveSubject,
        timestamp: datetime,
        tenant: str | None = None,
    ) -> Path:
        """Return the canonical archive path for *subject* at *timestamp*."""
        stamp = timestamp.strftime(TIMESTAMP_FORMAT)
        if subject is ArchiveSubject.EDGE_CERT_STORE:
            return self.root / f"{CERT_ARCHIVE_PREFIX}{stamp}.tar.gz"
        if not tenant:
            raise BackupError("Tenant data archives require a tenant name.")
        return self.root / f"{tenant}_db_{stamp}.sql.gz"

    # Create ------------------------------------------------------------
    def backup_edge_cert_store(self) -> BackupArchive:
        """Archive the edge proxy certificate directory."""
        if not self.cert_store.is_dir():
            raise CertStoreMissingError(f"Certificate store not found: {self.cert_store}")
        self.ensure_root()
        created = self._clock()
        final = self.archive_path(ArchiveSubject.EDGE_CERT_STORE, created)
        tmp_path = self._reserve_temp(final)
        try:
            create_archive(self.cert_store, tmp_path)
            self._publish(tmp_path, final)
        except (ArchiveError, OSError) as exc:
            raise BackupError(f"Failed to archive {self.cert_store}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        log.info("Certificate store archived to %s", final)
        return self._describe(final, ArchiveSubject.EDGE_CERT_STORE, created)

    def backup_tenant_data(self, tenant: Tenant) -> BackupArchive:
        """Dump *tenant*'s database into a gzip'd SQL archive."""
        env = load_env(tenant)
        credentials = database_credentials(tenant, env)
        container = tenant.db_container
        try:
            running = self.runtime.is_running(container)
        except RuntimeAdapterError as exc:
            raise BackupError(f"Cannot inspect {container}: {exc}") from exc
        if not running:
            raise ContainerNotRunningError(f"Database container {container} is not running.")

        self.ensure_root()
        created = self._clock()
        final = self.archive_path(ArchiveSubject.TENANT_DATA, created, tenant.name)
        tmp_path = self._reserve_temp(final)
        try:
            with tmp_path.open("wb") as raw, gzip.GzipFile(
                filename=final.name[: -len(".gz")], mode="wb", fileobj=raw
            ) as compressed:
                self.runtime.exec_to_stream(
                    container,
                    ["pg_dump", "-U", credentials.user, credentials.database],
                    compressed,
                )
            self._publish(tmp_path, final)
        except RuntimeAdapterError as exc:
            raise BackupError(f"Database dump for {tenant.name} failed: {exc}") from exc
        except OSError as exc:
            raise BackupError(f"Failed to write {final}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        log.info("Database of %s archived to %s", tenant.name, final)
        return self._describe(final, ArchiveSubject.TENANT_DATA, created, tenant.name)

    def backup_all_tenants(self, tenants: Sequence[Tenant] | None = None) -> BulkReport:
        """Back up every tenant; failures are counted, never fatal."""
        snapshot = list(tenants) if tenants is not None else discover(self.tenants_root)
        report = BulkReport()
        for tenant in snapshot:
            try:
                archive = self.backup_tenant_data(tenant)
            except (BackupError, TenantRegistryError) as exc:
                log.warning("Backup of %s failed: %s", tenant.name, exc)
                report.record(OperationResult(tenant.name, Action.BACKUP, False, str(exc)))
                continue
            report.record(OperationResult(tenant.name, Action.BACKUP, True, str(archive.path)))
        return report

    def backup_all(
        self,
        tenants: Sequence[Tenant] | None = None,
    ) -> tuple[BackupArchive | BackupError, BulkReport]:
        """Back up the certificate store and then every tenant."""
        cert: BackupArchive | BackupError
        try:
            cert = self.backup_edge_cert_store()
        except BackupError as exc:
            log.warning("Certificate store backup failed: %s", exc)
            cert = exc
        return cert, self.backup_all_tenants(tenants)

    # Inspect -----------------------------------------------------------
    def list_archives(self) -> dict[ArchiveSubject, list[BackupArchive]]:
        """Return recognised archives grouped by subject, newest first."""
        grouped: dict[ArchiveSubject, list[BackupArchive]] = {
            subject: [] for subject in ArchiveSubject
        }
        for archive in self._scan():
            grouped[archive.subject].append(archive)
        for archives in grouped.values():
            archives.sort(key=lambda item: (item.created_at, item.path.name), reverse=True)
        return grouped

    def total_size(self) -> int:
        """Return the combined size in bytes of every recognised archive."""
        return sum(archive.size_bytes for archive in self._scan())

    # Restore -----------------------------------------------------------
    def restore(self, archive_file: Path) -> RestoreResult:
        """Restore from *archive_file* after confirmation."""
        archive_file = Path(archive_file).expanduser()
        parsed = parse_archive_name(archive_file.name)
        if parsed is None:
            raise UnknownArchiveTypeError(f"Unrecognised archive type: {archive_file.name}")
        if not archive_file.is_file():
            candidate = self.root / archive_file.name
            if archive_file.parent == Path(".") and candidate.is_file():
                archive_file = candidate
            else:
                raise ArchiveNotFoundError(f"Archive not found: {archive_file}")
        if parsed.subject is ArchiveSubject.TENANT_DATA and parsed.tenant:
            return self._restore_tenant_data(archive_file, parsed.tenant)
        return self._restore_cert_store(archive_file)

    def _restore_cert_store(self, archive_file: Path) -> RestoreResult:
        result = RestoreResult(archive_file, ArchiveSubject.EDGE_CERT_STORE, performed=False)
        old_dir = self.cert_store.with_name(self.cert_store.name + OLD_SUFFIX)
        if old_dir.exists():
            raise BackupError(
                f"{old_dir} already exists from an earlier restore; inspect and remove it first."
            )
        prompt = (
            f"Restore the certificate store {self.cert_store} from {archive_file.name}? "
            f"The {self.proxy_container} container will be restarted."
        )
        if not self.confirm(prompt):
            return result

        try:
            self.runtime.stop_container(self.proxy_container)
        except RuntimeAdapterError as exc:
            result.warnings.append(f"Could not stop {self.proxy_container}: {exc}")
            log.warning("Could not stop %s: %s", self.proxy_container, exc)

        parent = self.cert_store.parent
        had_live = self.cert_store.exists()
        staging: Path | None = None
        try:
            if had_live:
                self.cert_store.rename(old_dir)
            staging = Path(tempfile.mkdtemp(dir=str(parent), prefix=f".{self.cert_store.name}."))
            payload = extract_archive(archive_file, staging, expected_root=self.cert_store.name)
            payload.rename(self.cert_store)
        except (ArchiveError, OSError) as exc:
            self._rollback_cert_store(old_dir, had_live, result)
            raise BackupError(f"Certificate store restore failed: {exc}") from exc
        finally:
            if staging is not None:
                shutil.rmtree(staging, ignore_errors=True)

        cert_file = self.cert_store / CERT_FILE_NAME
        if cert_file.exists():
            os.chmod(cert_file, 0o600)

        # The previous store is kept until the proxy is confirmed back up.
        self.runtime.start_container(self.proxy_container)
        if old_dir.exists():
            shutil.rmtree(old_dir)
        result.performed = True
        log.info("Certificate store restored from %s", archive_file)
        return result

    def _rollback_cert_store(self, old_dir: Path, had_live: bool, result: RestoreResult) -> None:
        if had_live and old_dir.exists():
            if self.cert_store.exists():
                shutil.rmtree(self.cert_store, ignore_errors=True)
            old_dir.rename(self.cert_store)
        try:
            self.runtime.start_container(self.proxy_container)
        except RuntimeAdapterError as exc:
            result.warnings.append(f"Could not restart {self.proxy_container}: {exc}")
            log.error("Could not restart %s after rollback: %s", self.proxy_container, exc)

    def _restore_tenant_data(self, archive_file: Path, name: str) -> RestoreResult:
        try:
            tenant = load_tenant(self.tenants_root, name)
        except TenantNotFoundError:
            raise
        except TenantRegistryError as exc:
            raise BackupError(f"Cannot restore {archive_file.name}: {exc}") from exc
        result = RestoreResult(
            archive_file, ArchiveSubject.TENANT_DATA, performed=False, tenant=tenant.name
        )
        env = load_env(tenant)
        credentials = database_credentials(tenant, env)
        container = tenant.db_container
        try:
            running = self.runtime.is_running(container)
        except RuntimeAdapterError as exc:
            raise BackupError(f"Cannot inspect {container}: {exc}") from exc
        if not running:
            raise ContainerNotRunningError(f"Database container {container} is not running.")

        prompt = (
            f"Restore database '{credentials.database}' of tenant {tenant.name} "
            f"from {archive_file.name}? Existing data may be overwritten."
        )
        if not self.confirm(prompt):
            return result

        try:
            with gzip.open(archive_file, "rb") as source:
                self.runtime.exec_from_stream(
                    container,
                    ["psql", "-U", credentials.user, "-d", credentials.database],
                    source,
                )
        except RuntimeAdapterError as exc:
            raise BackupError(f"Database restore for {tenant.name} failed: {exc}") from exc
        except (OSError, EOFError) as exc:
            raise BackupError(f"Cannot read {archive_file}: {exc}") from exc
        result.performed = True
        log.info("Database of %s restored from %s", tenant.name, archive_file)
        return result

    # Cleanup -----------------------------------------------------------
    def cleanup(self, retention_days: int) -> int:
        """Delete archives older than *retention_days* after confirmation."""
        if retention_days < 0:
            raise BackupError("Retention must be zero or more days.")
        cutoff = time.time() - retention_days * 86400
        expired: list[Path] = []
        for archive in self._scan():
            try:
                if archive.path.stat().st_mtime < cutoff:
                    expired.append(archive.path)
            except FileNotFoundError:
                continue
        if not expired:
            return 0
        prompt = f"Delete {len(expired)} backup archive(s) older than {retention_days} days?"
        if not self.confirm(prompt):
            return 0
        removed = 0
        for path in expired:
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise BackupError(f"Failed to delete {path}: {exc}") from exc
            removed += 1
        log.info("Removed %d expired archive(s) from %s", removed, self.root)
        return removed

    # ------------------------------------------------------------------
    def _scan(self) -> list[BackupArchive]:
        if not self.root.is_dir():
            return []
        archives: list[BackupArchive] = []
        for path in sorted(self.root.iterdir()):
            if not path.is_file():
                continue
            parsed = parse_archive_name(path.name)
            if parsed is None:
                continue
            archives.append(self._describe(path, parsed.subject, parsed.created_at, parsed.tenant))
        return archives

    def _describe(
        self,
        path: Path,
        subject: ArchiveSubject,
        created_at: datetime,
        tenant: str | None = None,
    ) -> BackupArchive:
        try:
            size = path.stat().st_size
        except OSError:
            size = 0
        return BackupArchive(
            subject=subject,
            path=path,
            created_at=created_at,
            size_bytes=size,
            tenant=tenant,
            readable=os.access(path, os.R_OK),
        )

    def _reserve_temp(self, final: Path) -> Path:
        try:
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(final.parent), prefix=f".{final.name}.")
        except OSError as exc:
            raise BackupError(f"Failed to prepare {final}: {exc}") from exc
        os.close(tmp_fd)
        return Path(tmp_name)

    @staticmethod
    def _publish(tmp_path: Path, final: Path) -> None:
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, final)


__all__ = [
    "ArchiveName",
    "ArchiveNotFoundError",
    "ArchiveSubject",
    "BackupArchive",
    "BackupError",
    "BackupManager",
    "CertStoreMissingError",
    "ContainerNotRunningError",
    "EnvMissingError",
    "RestoreResult",
    "UnknownArchiveTypeError",
    "parse_archive_name",
]
