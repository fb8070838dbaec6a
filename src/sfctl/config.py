"""Configuration loader for sfctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/sfctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SFCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SFCTL_BACKUPS__ROOT=/mnt/tmp/backups
    export SFCTL_FLEET__DELAY=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

When ``factory.sites_json`` is not configured it is derived from the Acquia
``AH_SITE_GROUP``/``AH_SITE_ENVIRONMENT`` variables, which is where a Site
Factory keeps its site map.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load sfctl configuration. Install with "
        "`pip install sfctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "SFCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
SITES_JSON_TEMPLATE = "/mnt/files/{group}.{env}/files-private/sites.json"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DrushConfig:
    """How the delegate command backend is invoked."""

    bin: str = "drush"
    alias: str = "@self"
    shell: str = "/bin/sh"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "alias": self.alias, "shell": self.shell}


@dataclass(frozen=True)
class FactoryConfig:
    """Location of the factory docroot and its site map."""

    docroot: Path = Path(".")
    sites_json: Path | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docroot": str(self.docroot),
            "sites_json": str(self.sites_json) if self.sites_json is not None else None,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Database dump storage defaults."""

    root: Path = Path("~/drush-backups").expanduser()
    bucket_format: str = "%Y%m%d"
    gzip: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "bucket_format": self.bucket_format,
            "gzip": self.gzip,
        }


@dataclass(frozen=True)
class FleetConfig:
    """Default sweep settings for ``run-on-fleet``."""

    delay: float = 0.0
    total_time_limit: float = 0.0
    use_https: bool = False
    unreadable_profile: str = "include"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "delay": self.delay,
            "total_time_limit": self.total_time_limit,
            "use_https": self.use_https,
            "unreadable_profile": self.unreadable_profile,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sfctl."""

    config_file: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    drush: DrushConfig
    factory: FactoryConfig
    backups: BackupConfig
    fleet: FleetConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "drush": self.drush.to_dict(),
            "factory": self.factory.to_dict(),
            "backups": self.backups.to_dict(),
            "fleet": self.fleet.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sfctl/config.yml",
    "logs_dir": "~/.sfctl/logs",
    "runtime_dir": "~/.sfctl/run",
    "lock_timeout": 30.0,
    "drush": {
        "bin": "drush",
        "alias": "@self",
        "shell": "/bin/sh",
    },
    "factory": {
        "docroot": ".",
        "sites_json": None,
    },
    "backups": {
        "root": "~/drush-backups",
        "bucket_format": "%Y%m%d",
        "gzip": False,
    },
    "fleet": {
        "delay": 0,
        "total_time_limit": 0,
        "use_https": False,
        "unreadable_profile": "include",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "drush": {"bin", "alias", "shell"},
    "factory": {"docroot", "sites_json"},
    "backups": {"root", "bucket_format", "gzip"},
    "fleet": {"delay", "total_time_limit", "use_https", "unreadable_profile"},
}
ALLOWED_UNREADABLE_PROFILE_POLICIES = {"include", "exclude"}


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

    return _build_app_config(merged, resolved_env)


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

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    fleet_map = _as_dict(raw.get("fleet"), "fleet")
    policy = fleet_map.get("unreadable_profile")
    if policy is not None and str(policy) not in ALLOWED_UNREADABLE_PROFILE_POLICIES:
        allowed_policies = ", ".join(sorted(ALLOWED_UNREADABLE_PROFILE_POLICIES))
        raise ConfigError(
            f"Unsupported unreadable_profile policy '{policy}'. Allowed: {allowed_policies}."
        )


def _build_app_config(raw: Mapping[str, object], env: Mapping[str, str]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    drush_mapping = _as_dict(raw.get("drush"), "drush")
    drush = DrushConfig(
        bin=str(drush_mapping.get("bin") or "drush"),
        alias=str(drush_mapping.get("alias") or "@self"),
        shell=str(drush_mapping.get("shell") or "/bin/sh"),
    )

    factory_mapping = _as_dict(raw.get("factory"), "factory")
    sites_json_value = factory_mapping.get("sites_json")
    sites_json: Path | None
    if sites_json_value:
        sites_json = _to_path(sites_json_value)
    else:
        sites_json = _derive_sites_json(env)
    factory = FactoryConfig(
        docroot=_to_path(factory_mapping.get("docroot", ".")),
        sites_json=sites_json,
    )

    backups_mapping = _as_dict(raw.get("backups"), "backups")
    bucket_format = str(backups_mapping.get("bucket_format") or "%Y%m%d")
    backups = BackupConfig(
        root=_to_path(backups_mapping.get("root", "~/drush-backups")),
        bucket_format=bucket_format,
        gzip=_expect_bool(backups_mapping.get("gzip"), "backups.gzip", default=False),
    )

    fleet_mapping = _as_dict(raw.get("fleet"), "fleet")
    fleet = FleetConfig(
        delay=_expect_non_negative_float(fleet_mapping.get("delay"), "fleet.delay"),
        total_time_limit=_expect_non_negative_float(
            fleet_mapping.get("total_time_limit"), "fleet.total_time_limit"
        ),
        use_https=_expect_bool(fleet_mapping.get("use_https"), "fleet.use_https", default=False),
        unreadable_profile=str(fleet_mapping.get("unreadable_profile", "include")),
    )

    return AppConfig(
        config_file=config_file,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        drush=drush,
        factory=factory,
        backups=backups,
        fleet=fleet,
    )


def _derive_sites_json(env: Mapping[str, str]) -> Path | None:
    group = env.get("AH_SITE_GROUP")
    environment = env.get("AH_SITE_ENVIRONMENT")
    if not group or not environment:
        return None
    return Path(SITES_JSON_TEMPLATE.format(group=group, env=environment))


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


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "on"}:
            return True
        if text in {"0", "false", "no", "off", ""}:
            return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _to_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _to_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str) -> float:
    if value is None:
        return 0.0
    numeric = _to_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
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
    "DrushConfig",
    "FactoryConfig",
    "FleetConfig",
    "load_config",
]
