"""Tenant discovery helpers.

A tenant is a directory directly under the tenants root that carries both an
environment file (``.env``) and a stack descriptor (``docker-compose.yml``).
Discovery is performed fresh on every call; callers pass the returned list
explicitly to whatever needs it.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from dotenv import dotenv_values

log = logging.getLogger(__name__)

ENV_FILE_NAME = ".env"
STACK_FILE_NAME = "docker-compose.yml"
DEPLOY_SCRIPT_NAME = "deploy.sh"
SECRETS_DIR_NAME = "secrets"
TEMPLATE_NAME = ".template"

DB_USER_SECRET = "postgres_user.txt"
DB_PASSWORD_SECRET = "postgres_password.txt"

_NAME_PATTERN = re.compile(r"^(?:[a-zA-Z0-9][a-zA-Z0-9_-]{0,62}[a-zA-Z0-9]|[a-zA-Z0-9])$")


class TenantRegistryError(RuntimeError):
    """Raised when the tenants root cannot be read at all."""


class TenantNotFoundError(TenantRegistryError):
    """Raised when a named tenant is not present or not well-formed."""


class InvalidTenantNameError(TenantRegistryError):
    """Raised when a tenant identifier fails validation."""


class EnvMissingError(TenantRegistryError):
    """Raised when a tenant's environment file is absent or unreadable."""


class SecretReadError(TenantRegistryError):
    """Raised when a tenant secret file exists but cannot be read."""


@dataclass(frozen=True)
class Tenant:
    """A tenant application stack discovered on disk."""

    name: str
    root: Path
    domain: str | None = None
    app_port: int | None = None
    app_image: str | None = None

    @property
    def label(self) -> str:
        """Human-friendly name used in the ledger and console output."""
        return friendly_name(self.name)

    @property
    def env_file(self) -> Path:
        """Path of the tenant's environment file."""
        return self.root / ENV_FILE_NAME

    @property
    def stack_file(self) -> Path:
        """Path of the tenant's stack descriptor."""
        return self.root / STACK_FILE_NAME

    @property
    def deploy_script(self) -> Path:
        """Path of the tenant's deploy entry point."""
        return self.root / DEPLOY_SCRIPT_NAME

    @property
    def secrets_dir(self) -> Path:
        """Directory holding per-tenant secret files."""
        return self.root / SECRETS_DIR_NAME

    @property
    def web_container(self) -> str:
        """Name of the tenant's application container."""
        return web_container(self.name)

    @property
    def db_container(self) -> str:
        """Name of the tenant's database container."""
        return db_container(self.name)


@dataclass(frozen=True)
class DatabaseCredentials:
    """Credentials used to dump or restore a tenant database."""

    user: str
    database: str
    password: str | None = None


def web_container(name: str) -> str:
    """Return the conventional application container name for *name*."""
    return f"{name}-web"


def db_container(name: str) -> str:
    """Return the conventional database container name for *name*."""
    return f"{name}-db"


def validate_tenant_name(name: str) -> str:
    """Return the normalised tenant identifier or raise."""
    normalized = name.strip()
    if normalized == TEMPLATE_NAME:
        raise InvalidTenantNameError(f"'{TEMPLATE_NAME}' is reserved and is never a tenant.")
    if not _NAME_PATTERN.match(normalized):
        raise InvalidTenantNameError(
            f"Invalid tenant name '{name}' (alphanumeric, hyphens, underscores; 1-64 chars)."
        )
    return normalized


def is_valid_name(name: str) -> bool:
    """Return True when *name* is an acceptable tenant identifier."""
    try:
        validate_tenant_name(name)
    except InvalidTenantNameError:
        return False
    return True


def friendly_name(name: str) -> str:
    """Convert ``acme_corp`` / ``acme-corp`` into ``Acme Corp``."""
    words = re.split(r"[_\-\s]+", name.strip())
    return " ".join(word[:1].upper() + word[1:].lower() for word in words if word)


def is_tenant_dir(path: Path) -> bool:
    """Return True when *path* looks like a complete tenant directory."""
    if not path.is_dir():
        return False
    if path.name == TEMPLATE_NAME or not is_valid_name(path.name):
        return False
    return (path / ENV_FILE_NAME).is_file() and (path / STACK_FILE_NAME).is_file()


def discover(tenants_root: Path) -> list[Tenant]:
    """Return the tenants found one level below *tenants_root*.

    A missing root or a root without qualifying directories yields an empty
    list. Entries are ordered by directory name so repeated scans within one
    run produce the same ordering.
    """
    root = Path(tenants_root).expanduser()
    if not root.exists():
        log.debug("Tenants root %s does not exist.", root)
        return []
    try:
        children = sorted(root.iterdir(), key=lambda item: item.name)
    except OSError as exc:
        raise TenantRegistryError(f"Cannot read tenants root {root}: {exc}") from exc

    tenants: list[Tenant] = []
    for child in children:
        if not is_tenant_dir(child):
            log.debug("Skipping %s: not a complete tenant directory.", child)
            continue
        tenants.append(_build_tenant(child))
    return tenants


def load_tenant(tenants_root: Path, name: str) -> Tenant:
    """Return the tenant called *name* under *tenants_root*."""
    normalized = validate_tenant_name(name)
    path = Path(tenants_root).expanduser() / normalized
    if not is_tenant_dir(path):
        raise TenantNotFoundError(f"Tenant '{normalized}' not found under {tenants_root}.")
    return _build_tenant(path)


def load_env(tenant: Tenant) -> dict[str, str]:
    """Return the parsed environment file for *tenant*."""
    if not tenant.env_file.is_file():
        raise EnvMissingError(f"Tenant environment file not found: {tenant.env_file}")
    try:
        raw = dotenv_values(tenant.env_file)
    except (OSError, UnicodeDecodeError) as exc:
        raise EnvMissingError(f"Cannot load {tenant.env_file}: {exc}") from exc
    return {key: value for key, value in raw.items() if value is not None}


def database_credentials(tenant: Tenant, env: Mapping[str, str] | None = None) -> DatabaseCredentials:
    """Resolve database credentials, preferring secret files over the env file."""
    values = dict(env) if env is not None else load_env(tenant)
    user = _read_secret(tenant.secrets_dir / DB_USER_SECRET) or values.get("POSTGRES_USER")
    password = _read_secret(tenant.secrets_dir / DB_PASSWORD_SECRET) or values.get(
        "POSTGRES_PASSWORD"
    )
    database = values.get("POSTGRES_DB") or tenant.name
    return DatabaseCredentials(user=user or "postgres", database=database, password=password)


def missing_secrets(tenant: Tenant) -> list[str]:
    """Return the database secret files *tenant* lacks."""
    return [
        name
        for name in (DB_USER_SECRET, DB_PASSWORD_SECRET)
        if not (tenant.secrets_dir / name).is_file()
    ]


def _read_secret(path: Path) -> str | None:
    try:
        value = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError) as exc:
        raise SecretReadError(f"Cannot read secret {path}: {exc}") from exc
    return value or None


def _build_tenant(path: Path) -> Tenant:
    values: dict[str, str | None] = {}
    try:
        values = dict(dotenv_values(path / ENV_FILE_NAME))
    except (OSError, UnicodeDecodeError) as exc:
        log.warning("Cannot parse %s: %s", path / ENV_FILE_NAME, exc)

    port: int | None = None
    port_value = values.get("APP_PORT")
    if port_value:
        try:
            port = int(port_value)
        except ValueError:
            log.warning("Tenant %s declares a non-numeric APP_PORT %r.", path.name, port_value)

    return Tenant(
        name=path.name,
        root=path,
        domain=values.get("CLIENT_DOMAIN") or None,
        app_port=port,
        app_image=values.get("APP_IMAGE") or None,
    )


__all__ = [
    "DatabaseCredentials",
    "EnvMissingError",
    "InvalidTenantNameError",
    "SecretReadError",
    "Tenant",
    "TenantNotFoundError",
    "TenantRegistryError",
    "database_credentials",
    "db_container",
    "discover",
    "friendly_name",
    "is_tenant_dir",
    "load_env",
    "load_tenant",
    "missing_secrets",
    "validate_tenant_name",
    "web_container",
]
