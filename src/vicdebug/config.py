"""Configuration loader for vic-debug.

Values are merged from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/vic-debug/config.yml`` (or an override path).
3. Environment variables prefixed with ``VICDEBUG_``.
4. Explicit overrides supplied programmatically (used for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export VICDEBUG_TARGET__URL=vcenter.example.com
    export VICDEBUG_LOGGING__LEVEL=debug

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import copy
import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar
from urllib.parse import unquote, urlsplit

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load vic-debug configuration. Install with "
        "`pip install vic-debug` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "VICDEBUG_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}
# Secrets and identifiers are taken verbatim rather than YAML-coerced.
VERBATIM_ENV_PATHS = {
    ("target", "user"),
    ("target", "password"),
    ("target", "thumbprint"),
    ("guest", "user"),
    ("guest", "password"),
}
ALLOWED_LOG_LEVELS = {"debug", "info", "warning", "error"}
T = TypeVar("T", int, float)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class TargetConfig:
    """Connection parameters for the vCenter or ESXi endpoint."""

    url: str = ""
    user: str = ""
    password: str = ""
    datacenter: str = ""
    port: int = 443
    thumbprint: str = ""

    @property
    def host(self) -> str:
        """Return the bare host name of :attr:`url`."""
        return _split_target(self.url)[0]

    def has_credentials(self) -> bool:
        """Return ``True`` when both user and password are known."""
        return bool(self.user) and bool(self.password)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "url": self.url,
            "user": self.user,
            "password": "<redacted>" if self.password else "",
            "datacenter": self.datacenter,
            "port": self.port,
            "thumbprint": self.thumbprint,
        }


@dataclass(frozen=True)
class GuestConfig:
    """Guest operations settings for running programs inside the appliance."""

    user: str = "root"
    password: str = ""
    poll_interval: float = 0.5

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (password redacted)."""
        return {
            "user": self.user,
            "password": "<redacted>" if self.password else "",
            "poll_interval": self.poll_interval,
        }


@dataclass(frozen=True)
class DiagnosticsConfig:
    """Diagnostic bundle defaults."""

    dir: Path
    timeout: float = 60.0
    max_log_lines: int = 5000
    max_bundle_bytes: int = 50 * 1024 * 1024
    redacted: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "dir": str(self.dir),
            "timeout": self.timeout,
            "max_log_lines": self.max_log_lines,
            "max_bundle_bytes": self.max_bundle_bytes,
            "redacted": self.redacted,
        }


@dataclass(frozen=True)
class LoggingConfig:
    """Logging verbosity threaded into the structured logger."""

    level: str = "info"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"level": self.level}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for vic-debug."""

    config_file: Path
    logs_dir: Path
    timeout: float
    target: TargetConfig
    guest: GuestConfig
    diagnostics: DiagnosticsConfig
    logging: LoggingConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "timeout": self.timeout,
            "target": self.target.to_dict(),
            "guest": self.guest.to_dict(),
            "diagnostics": self.diagnostics.to_dict(),
            "logging": self.logging.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/vic-debug/config.yml",
    "logs_dir": "/var/log/vic-debug",
    "timeout": 180.0,
    "target": {
        "url": "",
        "user": "",
        "password": "",
        "datacenter": "",
        "port": 443,
        "thumbprint": "",
    },
    "guest": {
        "user": "root",
        "password": "",
        "poll_interval": 0.5,
    },
    "diagnostics": {
        "dir": None,  # derived from logs_dir when absent
        "timeout": 60.0,
        "max_log_lines": 5000,
        "max_bundle_bytes": 50 * 1024 * 1024,
        "redacted": True,
    },
    "logging": {
        "level": "info",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "target": {"url", "user", "password", "datacenter", "port", "thumbprint"},
    "guest": {"user", "password", "poll_interval"},
    "diagnostics": {"dir", "timeout", "max_log_lines", "max_bundle_bytes", "redacted"},
    "logging": {"level"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    environ = os.environ if env is None else env
    path = _config_path(config_file, environ)

    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    for layer in (_read_yaml(path), _env_layer(environ), _prune(overrides or {})):
        merged = _merge(merged, layer)
    merged["config_file"] = str(path)

    _check_keys(merged)
    return _build_app_config(merged)


def _config_path(explicit: str | os.PathLike[str] | None, env: Mapping[str, str]) -> Path:
    if explicit:
        return Path(explicit)
    return Path(env.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))


def _read_yaml(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must hold a mapping, not {type(data).__name__}.")
    return _section(data, str(path))


def _check_keys(raw: Mapping[str, object]) -> None:
    stray = sorted(set(raw) - ALLOWED_TOP_LEVEL_KEYS)
    if stray:
        raise ConfigError(f"Unknown configuration keys: {', '.join(stray)}.")
    for name, allowed in _SECTION_KEYS.items():
        stray = sorted(set(_section(raw.get(name), name)) - allowed)
        if stray:
            raise ConfigError(f"Unknown {name} configuration keys: {', '.join(stray)}.")

    level = str(_section(raw.get("logging"), "logging").get("level", "info")).lower()
    if level not in ALLOWED_LOG_LEVELS:
        raise ConfigError(
            f"Unsupported logging level '{level}'. "
            f"Allowed: {', '.join(sorted(ALLOWED_LOG_LEVELS))}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    logs_dir = _path(raw.get("logs_dir"), "logs_dir")
    guest = _section(raw.get("guest"), "guest")
    diag = _section(raw.get("diagnostics"), "diagnostics")
    level = str(_section(raw.get("logging"), "logging").get("level", "info")).lower()

    diag_dir = diag.get("dir")
    diagnostics = DiagnosticsConfig(
        dir=_path(diag_dir, "diagnostics.dir") if diag_dir else logs_dir / "diagnostics",
        timeout=_positive(diag.get("timeout"), "diagnostics.timeout", 60.0, float),
        max_log_lines=_positive(diag.get("max_log_lines"), "diagnostics.max_log_lines", 5000, int),
        max_bundle_bytes=_positive(
            diag.get("max_bundle_bytes"), "diagnostics.max_bundle_bytes", 50 * 1024 * 1024, int
        ),
        redacted=bool(diag.get("redacted", True)),
    )
    return AppConfig(
        config_file=_path(raw.get("config_file"), "config_file"),
        logs_dir=logs_dir,
        timeout=_positive(raw.get("timeout"), "timeout", 180.0, float),
        target=_build_target(_section(raw.get("target"), "target")),
        guest=GuestConfig(
            user=str(guest.get("user") or "root"),
            password=str(guest.get("password") or ""),
            poll_interval=_positive(guest.get("poll_interval"), "guest.poll_interval", 0.5, float),
        ),
        diagnostics=diagnostics,
        logging=LoggingConfig(level=level),
    )


def _build_target(mapping: Mapping[str, object]) -> TargetConfig:
    """Fold credentials and datacenter embedded in the URL into the target."""
    url = str(mapping.get("url") or "").strip()
    host, url_user, url_password, url_datacenter = _split_target(url)
    port = _number(mapping.get("port"), "target.port", 443, int)
    if not 0 < port < 65536:
        raise ConfigError(f"target.port must be between 1 and 65535. Got {port}.")
    return TargetConfig(
        url=host,
        user=str(mapping.get("user") or "") or url_user,
        password=str(mapping.get("password") or "") or url_password,
        datacenter=str(mapping.get("datacenter") or "") or url_datacenter,
        port=port,
        thumbprint=str(mapping.get("thumbprint") or ""),
    )


def _split_target(url: str) -> tuple[str, str, str, str]:
    """Split ``[user[:password]@]host[/datacenter]`` into its parts."""
    if not url:
        return "", "", "", ""
    candidate = url if "://" in url else f"https://{url}"
    parts = urlsplit(candidate)
    host = parts.hostname or ""
    user = unquote(parts.username or "")
    password = unquote(parts.password or "")
    datacenter = unquote(parts.path.strip("/"))
    if datacenter.startswith("sdk"):
        datacenter = datacenter[3:].lstrip("/")
    return host, user, password, datacenter


def _env_layer(env: Mapping[str, str]) -> dict[str, object]:
    """Turn ``VICDEBUG_A__B=value`` variables into ``{"a": {"b": value}}``."""
    layer: dict[str, object] = {}
    for name in sorted(env):
        if name in RESERVED_ENV_KEYS or not name.startswith(ENV_PREFIX):
            continue
        path = tuple(part.lower() for part in name[len(ENV_PREFIX) :].split("__") if part)
        if not path:
            continue
        raw = env[name]
        value: object = raw if path in VERBATIM_ENV_PATHS else _parse_scalar(raw)
        node = layer
        for part in path[:-1]:
            child = node.setdefault(part, {})
            if not isinstance(child, dict):
                raise ConfigError(
                    f"{name} conflicts with the scalar value already set for {part}."
                )
            node = child
        node[path[-1]] = value
    return layer


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    """Return *base* updated by *layer*, merging nested sections key by key."""
    result = dict(base)
    for key, value in layer.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _merge(current, _section(value, key))
        else:
            result[key] = value
    return result


def _prune(source: Mapping[str, object]) -> dict[str, object]:
    """Strip unset CLI overrides so they do not mask lower layers."""
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            value = _prune(_section(value, f"overrides.{key}")) or None
        if value is not None:
            result[key] = value
    return result


def _parse_scalar(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:  # pragma: no cover - fall back to the raw string
        return text


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"Expected {label} to be a filesystem path. Got {value!r}.")


def _number(value: object, label: str, default: T, kind: type[T]) -> T:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"Expected {label} to be a number. Got {value!r}.")
    try:
        if kind is int and isinstance(value, str):
            return kind(value, 0)  # type: ignore[call-arg]
        return kind(value)
    except ValueError as exc:
        raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc


def _positive(value: object, label: str, default: T, kind: type[T]) -> T:
    number = _number(value, label, default, kind)
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _section(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    bad = [key for key in value if not isinstance(key, str)]
    if bad:
        raise ConfigError(f"Mapping {label} must use string keys. Got {bad[0]!r}.")
    return dict(value)


__all__ = [
    "AppConfig",
    "ConfigError",
    "DiagnosticsConfig",
    "GuestConfig",
    "LoggingConfig",
    "TargetConfig",
    "load_config",
]
