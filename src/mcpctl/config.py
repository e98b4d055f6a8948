"""Configuration loader for mcpctl.

Settings for the catalog location, the container runtime, script interpreters
and post-operation refreshes are merged from these sources, lowest precedence
first:

1. Built-in defaults.
2. ``~/.config/mcpctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MCPCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MCPCTL_RUNTIME__DOCKER_BIN=podman
    export MCPCTL_REFRESH__SETTLE_DELAY=1.5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``; :func:`load_config` is the only entry point.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except ImportError as exc:  # pragma: no cover
    raise RuntimeError(
        "PyYAML is required to load mcpctl configuration. Install with "
        "`pip install mcpctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "MCPCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    f"{ENV_PREFIX}SETTINGS_FILE",
}

SCRIPT_PLACEHOLDER = "{script}"

DEFAULT_INTERPRETERS: dict[str, list[str]] = {
    ".ps1": [
        "pwsh",
        "-NoProfile",
        "-NonInteractive",
        "-NoLogo",
        "-ExecutionPolicy",
        "Bypass",
        "-OutputFormat",
        "Text",
        "-File",
        SCRIPT_PLACEHOLDER,
    ],
    ".sh": ["bash", "--noprofile", "--norc", SCRIPT_PLACEHOLDER],
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class RuntimeConfig:
    """Container runtime integration values."""

    docker_bin: str = "docker"
    image_namespace: str = "mcp/"
    instance_suffix: str = "-mcp-server"
    logs_tail: int = 500

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "image_namespace": self.image_namespace,
            "instance_suffix": self.instance_suffix,
            "logs_tail": self.logs_tail,
        }


@dataclass(frozen=True)
class ScriptsConfig:
    """Provisioning script invocation profile."""

    max_output_bytes: int = 1024 * 1024
    extensions: tuple[str, ...] = (".ps1", ".sh")
    interpreters: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: {
            suffix: tuple(argv) for suffix, argv in DEFAULT_INTERPRETERS.items()
        }
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_output_bytes": self.max_output_bytes,
            "extensions": list(self.extensions),
            "interpreters": {suffix: list(argv) for suffix, argv in self.interpreters.items()},
        }


@dataclass(frozen=True)
class RefreshConfig:
    """Settle-then-refresh behaviour after mutating operations."""

    strategy: str = "poll"
    settle_delay: float = 2.0
    attempts: int = 5
    interval: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "strategy": self.strategy,
            "settle_delay": self.settle_delay,
            "attempts": self.attempts,
            "interval": self.interval,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mcpctl."""

    config_file: Path
    catalog_dir: Path
    settings_dir: Path
    logs_dir: Path
    runtime_dir: Path
    lock_timeout: float
    runtime: RuntimeConfig
    scripts: ScriptsConfig
    refresh: RefreshConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "catalog_dir": str(self.catalog_dir),
            "settings_dir": str(self.settings_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "lock_timeout": self.lock_timeout,
            "runtime": self.runtime.to_dict(),
            "scripts": self.scripts.to_dict(),
            "refresh": self.refresh.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/mcpctl/config.yml",
    "catalog_dir": "~/.local/share/mcpctl/scripts",
    "settings_dir": None,  # derived from catalog_dir when absent
    "logs_dir": "~/.local/state/mcpctl/logs",
    "runtime_dir": "~/.local/state/mcpctl/run",
    "lock_timeout": 30.0,
    "runtime": {
        "docker_bin": "docker",
        "image_namespace": "mcp/",
        "instance_suffix": "-mcp-server",
        "logs_tail": 500,
    },
    "scripts": {
        "max_output_bytes": 1024 * 1024,
        "extensions": [".ps1", ".sh"],
        "interpreters": None,  # DEFAULT_INTERPRETERS when absent
    },
    "refresh": {
        "strategy": "poll",
        "settle_delay": 2.0,
        "attempts": 5,
        "interval": 1.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_REFRESH_STRATEGIES = {"poll", "fixed"}


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
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


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

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    runtime = raw.get("runtime")
    if runtime is not None:
        runtime_map = _as_dict(runtime, "runtime")
        unknown = set(runtime_map.keys()) - {
            "docker_bin",
            "image_namespace",
            "instance_suffix",
            "logs_tail",
        }
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown runtime configuration keys: {joined}.")

    scripts = raw.get("scripts")
    if scripts is not None:
        scripts_map = _as_dict(scripts, "scripts")
        unknown = set(scripts_map.keys()) - {"max_output_bytes", "extensions", "interpreters"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown scripts configuration keys: {joined}.")

        interpreters = scripts_map.get("interpreters")
        if interpreters is not None:
            interpreters_map = _as_dict(interpreters, "scripts.interpreters")
            for suffix, argv in interpreters_map.items():
                _validate_interpreter(suffix, argv)

    refresh = raw.get("refresh")
    if refresh is not None:
        refresh_map = _as_dict(refresh, "refresh")
        unknown = set(refresh_map.keys()) - {"strategy", "settle_delay", "attempts", "interval"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown refresh configuration keys: {joined}.")
        strategy = refresh_map.get("strategy")
        if strategy is not None and str(strategy) not in ALLOWED_REFRESH_STRATEGIES:
            allowed = ", ".join(sorted(ALLOWED_REFRESH_STRATEGIES))
            raise ConfigError(f"Unsupported refresh strategy '{strategy}'. Allowed: {allowed}.")


def _validate_interpreter(suffix: str, argv: object) -> None:
    label = f"scripts.interpreters.{suffix}"
    if not suffix.startswith("."):
        raise ConfigError(f"{label}: script extensions must start with '.'.")
    sequence = _as_sequence(argv, label)
    if not sequence:
        raise ConfigError(f"{label} must not be empty.")
    if not all(isinstance(item, str) for item in sequence):
        raise ConfigError(f"{label} must be a list of strings.")
    if SCRIPT_PLACEHOLDER not in sequence:
        raise ConfigError(f"{label} must contain the {SCRIPT_PLACEHOLDER} placeholder.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    catalog_dir = _to_path(raw.get("catalog_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    settings_dir_value = raw.get("settings_dir")
    settings_dir = _to_path(settings_dir_value) if settings_dir_value else catalog_dir / "settings"

    runtime_mapping = _as_dict(raw.get("runtime"), "runtime")
    logs_tail = _expect_int(runtime_mapping.get("logs_tail"), "runtime.logs_tail", default=500)
    if logs_tail <= 0:
        raise ConfigError("runtime.logs_tail must be greater than zero.")
    docker_bin = str(runtime_mapping.get("docker_bin", "docker")).strip()
    if not docker_bin:
        raise ConfigError("runtime.docker_bin must be a non-empty string.")
    runtime = RuntimeConfig(
        docker_bin=docker_bin,
        image_namespace=str(runtime_mapping.get("image_namespace", "mcp/")),
        instance_suffix=str(runtime_mapping.get("instance_suffix", "-mcp-server")),
        logs_tail=logs_tail,
    )

    scripts_mapping = _as_dict(raw.get("scripts"), "scripts")
    max_output_bytes = _expect_int(
        scripts_mapping.get("max_output_bytes"),
        "scripts.max_output_bytes",
        default=1024 * 1024,
    )
    if max_output_bytes <= 0:
        raise ConfigError("scripts.max_output_bytes must be greater than zero.")

    extensions_raw = scripts_mapping.get("extensions")
    if extensions_raw is None:
        extensions: tuple[str, ...] = (".ps1", ".sh")
    else:
        extensions = tuple(
            _normalize_extension(item, "scripts.extensions")
            for item in _as_sequence(extensions_raw, "scripts.extensions")
        )
        if not extensions:
            raise ConfigError("scripts.extensions must list at least one extension.")

    interpreters_raw = scripts_mapping.get("interpreters")
    interpreters: dict[str, tuple[str, ...]] = {
        suffix: tuple(argv) for suffix, argv in DEFAULT_INTERPRETERS.items()
    }
    if interpreters_raw is not None:
        for suffix, argv in _as_dict(interpreters_raw, "scripts.interpreters").items():
            _validate_interpreter(suffix, argv)
            interpreters[suffix.lower()] = tuple(
                cast(Sequence[str], _as_sequence(argv, suffix))
            )
    missing = [suffix for suffix in extensions if suffix not in interpreters]
    if missing:
        joined = ", ".join(missing)
        raise ConfigError(f"No interpreter configured for script extensions: {joined}.")

    scripts = ScriptsConfig(
        max_output_bytes=max_output_bytes,
        extensions=extensions,
        interpreters=interpreters,
    )

    refresh_mapping = _as_dict(raw.get("refresh"), "refresh")
    attempts = _expect_int(refresh_mapping.get("attempts"), "refresh.attempts", default=5)
    if attempts < 1:
        raise ConfigError("refresh.attempts must be at least 1.")
    refresh = RefreshConfig(
        strategy=str(refresh_mapping.get("strategy", "poll")),
        settle_delay=_expect_non_negative_float(
            refresh_mapping.get("settle_delay"), "refresh.settle_delay", default=2.0
        ),
        attempts=attempts,
        interval=_expect_non_negative_float(
            refresh_mapping.get("interval"), "refresh.interval", default=1.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        catalog_dir=catalog_dir,
        settings_dir=settings_dir,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        lock_timeout=lock_timeout,
        runtime=runtime,
        scripts=scripts,
        refresh=refresh,
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
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _normalize_extension(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} entries must be non-empty strings.")
    text = value.strip().lower()
    return text if text.startswith(".") else f".{text}"


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


def _expect_float(value: object, label: str) -> float:
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
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
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
    "ConfigError",
    "RefreshConfig",
    "RuntimeConfig",
    "ScriptsConfig",
    "load_config",
]
