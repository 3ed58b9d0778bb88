"""Configuration loader for tenantctl.

Configuration values are layered from several sources:

1. Built-in defaults.
2. ``/etc/tenantctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``TENANTCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export TENANTCTL_BACKUPS__RETENTION_DAYS=14
    export TENANTCTL_EDGE_PROXY__CONTAINER=traefik

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "TENANTCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    retention_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "retention_days": self.retention_days}


@dataclass(frozen=True)
class EdgeProxyConfig:
    """Location of the shared edge proxy and its certificate store."""

    container: str = "traefik"
    cert_store: Path = Path("/opt/traefik/acme")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"container": self.container, "cert_store": str(self.cert_store)}


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime binding settings."""

    docker_bin: str = "docker"
    timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "timeout": self.timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for tenantctl."""

    config_file: Path
    tenants_root: Path
    state_dir: Path
    ledger_file: Path
    logs_dir: Path
    backups: BackupConfig
    edge_proxy: EdgeProxyConfig
    runtime: RuntimeConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "tenants_root": str(self.tenants_root),
            "state_dir": str(self.state_dir),
            "ledger_file": str(self.ledger_file),
            "logs_dir": str(self.logs_dir),
            "backups": self.backups.to_dict(),
            "edge_proxy": self.edge_proxy.to_dict(),
            "runtime": self.runtime.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/tenantctl/config.yml",
    "tenants_root": "/opt/tenants",
    "state_dir": "/var/lib/tenantctl",
    "ledger_file": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/tenantctl",
    "backups": {
        "root": "/var/backups/tenantctl",
        "retention_days": 30,
    },
    "edge_proxy": {
        "container": "traefik",
        "cert_store": "/opt/traefik/acme",
    },
    "runtime": {
        "docker_bin": "docker",
        "timeout": 300.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "backups": {"root", "retention_days"},
    "edge_proxy": {"container", "cert_store"},
    "runtime": {"docker_bin", "timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    backups_map = _as_dict(raw.get("backups"), "backups")
    retention = backups_map.get("retention_days")
    if retention is not None:
        days = _expect_int(retention, "backups.retention_days", default=30)
        if days < 0:
            raise ConfigError("backups.retention_days must be non-negative.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    tenants_root = _to_path(raw.get("tenants_root"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    ledger_value = raw.get("ledger_file")
    ledger_file = _to_path(ledger_value) if ledger_value else state_dir / "deployment_status.yml"

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    backups = BackupConfig(
        root=_to_path(backups_mapping.get("root", "/var/backups/tenantctl")),
        retention_days=_expect_int(
            backups_mapping.get("retention_days"), "backups.retention_days", default=30
        ),
    )

    proxy_mapping = _as_dict(raw.get("edge_proxy"), "edge_proxy")
    container = str(proxy_mapping.get("container", "traefik")).strip()
    if not container:
        raise ConfigError("edge_proxy.container must be a non-empty string.")
    edge_proxy = EdgeProxyConfig(
        container=container,
        cert_store=_to_path(proxy_mapping.get("cert_store", "/opt/traefik/acme")),
    )

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    runtime = RuntimeConfig(
        docker_bin=str(runtime_mapping.get("docker_bin", "docker")),
        timeout=_expect_positive_float(
            runtime_mapping.get("timeout"), "runtime.timeout", default=300.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        tenants_root=tenants_root,
        state_dir=state_dir,
        ledger_file=ledger_file,
        logs_dir=logs_dir,
        backups=backups,
        edge_proxy=edge_proxy,
        runtime=runtime,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "ConfigError",
    "EdgeProxyConfig",
    "RuntimeConfig",
    "load_config",
]
