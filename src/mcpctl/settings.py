"""Per-server settings files.

Each server type has up to two files in the settings directory:

``<ServerType>Settings.env``
    Live values written by mcpctl, one ``KEY=value`` per line.

``<ServerType>Settings.example.env``
    A read-only template shipped with the catalog. Comment lines declare the
    required and optional settings, their descriptions and default values::

        # Required Settings:
        # API_KEY - your key
        # Optional Settings:
        # REGION - deployment region
        # REGION=us-east-1

The template is never written by mcpctl.
"""
from __future__ import annotations

import logging
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SETTINGS_SUFFIX = "Settings.env"
TEMPLATE_SUFFIX = "Settings.example.env"
REQUIRED_MARKER = "Required Settings:"
OPTIONAL_MARKER = "Optional Settings:"

_SERVER_TYPE = re.compile(r"[A-Za-z0-9_-]+")
_KEY = re.compile(r"[A-Za-z_][A-Za-z0-9_]*")
_DESCRIPTION_LINE = re.compile(r"^\s*#\s*([A-Z_][A-Z0-9_]*)\s+-\s+(.+?)\s*$")
_DEFAULT_LINE = re.compile(r"^\s*(?:#\s?)?([A-Z_][A-Z0-9_]*)=(.+?)\s*$")


class SettingsError(OSError):
    """Raised when a settings file cannot be read or written."""


class SettingsValidationError(ValueError):
    """Raised when a server type, key or value is not acceptable."""


@dataclass(frozen=True, slots=True)
class SettingsTemplate:
    """Field declarations parsed from a template file."""

    required_names: tuple[str, ...] = ()
    optional_names: tuple[str, ...] = ()
    descriptions: Mapping[str, str] = field(default_factory=dict)
    defaults: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SettingsDocument:
    """Template declarations combined with the current values."""

    server_type: str
    values: Mapping[str, str]
    required_names: tuple[str, ...] = ()
    optional_names: tuple[str, ...] = ()
    descriptions: Mapping[str, str] = field(default_factory=dict)

    def missing_required(self) -> list[str]:
        """Return the required settings that have no non-empty value."""
        return [name for name in self.required_names if not self.values.get(name, "").strip()]

    def to_dict(self) -> dict[str, object]:
        """Return the ``settings-data`` payload."""
        return {
            "settings": dict(self.values),
            "requiredSettings": list(self.required_names),
            "optionalSettings": list(self.optional_names),
            "descriptions": dict(self.descriptions),
            "serverType": self.server_type,
        }


def parse_template(text: str) -> SettingsTemplate:
    """Parse template *text* into a :class:`SettingsTemplate`."""
    required: list[str] = []
    optional: list[str] = []
    descriptions: dict[str, str] = {}
    defaults: dict[str, str] = {}
    section: str | None = None

    for line in text.splitlines():
        if REQUIRED_MARKER in line:
            section = "required"
            continue
        if OPTIONAL_MARKER in line:
            section = "optional"
            continue

        description = _DESCRIPTION_LINE.match(line)
        if description is not None:
            name, text_value = description.group(1), description.group(2)
            descriptions[name] = text_value
            if section == "required" and name not in required:
                required.append(name)
            elif section == "optional" and name not in optional:
                optional.append(name)
            continue

        default = _DEFAULT_LINE.match(line)
        if default is not None:
            defaults.setdefault(default.group(1), default.group(2))

    return SettingsTemplate(
        required_names=tuple(required),
        optional_names=tuple(optional),
        descriptions=descriptions,
        defaults=defaults,
    )


def parse_values(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, ignoring comments, blanks and malformed lines."""
    values: dict[str, str] = {}
    for number, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            LOGGER.warning("Skipping malformed settings line %d: %r", number, raw)
            continue
        values[key] = value.strip()
    return values


def render_values(server_type: str, values: Mapping[str, str]) -> str:
    """Render the settings file body for *values*.

    Values are written stripped and blank ones are omitted, matching what
    :func:`parse_values` reads back.
    """
    lines = [
        f"# {server_type} MCP Server Settings",
        "# Generated by MCP Deployment Manager",
        "",
    ]
    for key, value in values.items():
        text = "" if value is None else str(value).strip()
        if not text:
            continue
        lines.append(f"{key}={text}")
    return "\n".join(lines) + "\n"


class SettingsStore:
    """Read and write settings files under *settings_dir*."""

    def __init__(self, settings_dir: Path) -> None:
        """Store the settings directory."""
        self.settings_dir = Path(settings_dir).expanduser()

    def settings_path(self, server_type: str) -> Path:
        """Return the live settings file path for *server_type*."""
        return self.settings_dir / f"{validate_server_type(server_type)}{SETTINGS_SUFFIX}"

    def template_path(self, server_type: str) -> Path:
        """Return the template file path for *server_type*."""
        return self.settings_dir / f"{validate_server_type(server_type)}{TEMPLATE_SUFFIX}"

    def load_template(self, server_type: str) -> SettingsTemplate:
        """Return the parsed template, or an empty one when it does not exist."""
        text = self._read(self.template_path(server_type))
        return parse_template(text) if text is not None else SettingsTemplate()

    def load_values(self, server_type: str) -> dict[str, str]:
        """Return the stored values, or ``{}`` when no settings file exists."""
        text = self._read(self.settings_path(server_type))
        return parse_values(text) if text is not None else {}

    def load(self, server_type: str) -> SettingsDocument:
        """Return template declarations merged with defaults and stored values."""
        template = self.load_template(server_type)
        values = dict(template.defaults)
        values.update(self.load_values(server_type))
        return SettingsDocument(
            server_type=server_type,
            values=values,
            required_names=template.required_names,
            optional_names=template.optional_names,
            descriptions=dict(template.descriptions),
        )

    def save(self, server_type: str, values: Mapping[str, object]) -> Path:
        """Atomically replace the settings file for *server_type* with *values*."""
        path = self.settings_path(server_type)
        cleaned = _validate_values(values)
        try:
            self.settings_dir.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.settings_dir), prefix=f".{path.name}.")
        except OSError as exc:
            raise SettingsError(f"Failed to save server settings to {path}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(render_values(server_type, cleaned))
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise SettingsError(f"Failed to save server settings to {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return path

    def _read(self, path: Path) -> str | None:
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise SettingsError(f"Failed to read settings file {path}: {exc}") from exc


def validate_server_type(server_type: str) -> str:
    """Validate a server type used to build settings file names."""
    normalized = (server_type or "").strip()
    if not _SERVER_TYPE.fullmatch(normalized):
        raise SettingsValidationError(
            f"Server type {server_type!r} must match [A-Za-z0-9_-]+."
        )
    return normalized


def _validate_values(values: Mapping[str, object]) -> dict[str, str]:
    cleaned: dict[str, str] = {}
    for key, value in values.items():
        name = str(key).strip()
        if not _KEY.fullmatch(name):
            raise SettingsValidationError(f"Invalid setting name {key!r}.")
        text = "" if value is None else str(value)
        if "\n" in text or "\r" in text:
            raise SettingsValidationError(f"Setting {name} must be a single line.")
        text = text.strip()
        if text:
            cleaned[name] = text
    return cleaned


__all__ = [
    "SettingsDocument",
    "SettingsError",
    "SettingsStore",
    "SettingsTemplate",
    "SettingsValidationError",
    "parse_template",
    "parse_values",
    "render_values",
    "validate_server_type",
]
