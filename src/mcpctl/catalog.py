"""Catalog of deployable MCP servers backed by provisioning scripts.

A catalog directory holds one script per server, named
``load<Name>MCP.<ext>`` (for example ``loadBraveMCP.ps1``). The leading comment
lines of each script double as its description. Scanning is best-effort
metadata extraction, not parsing: an odd header just yields an empty
description.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from itertools import islice
from pathlib import Path

LOGGER = logging.getLogger(__name__)

SCRIPT_PREFIX = "load"
SCRIPT_SUFFIX = "MCP"
DESCRIPTION_LINES = 10
STEP_MARKER = "Step"
DEFAULT_INSTANCE_SUFFIX = "-mcp-server"

_SCRIPT_NAME = re.compile(
    rf"^{SCRIPT_PREFIX}(?P<name>[A-Za-z0-9_]+){SCRIPT_SUFFIX}(?P<ext>\.[A-Za-z0-9]+)$"
)
_COMMENT_PREFIX = re.compile(r"^#\s*")


class CatalogError(OSError):
    """Raised when the catalog cannot be read or a script cannot be resolved."""


@dataclass(frozen=True, slots=True)
class CatalogEntry:
    """A deployable server definition."""

    id: str
    name: str
    script_path: Path
    description: str
    instance_name: str

    @property
    def script_name(self) -> str:
        """Return the script file name used as the entry's handle."""
        return self.script_path.name

    @property
    def server_type(self) -> str:
        """Return the settings key for this entry."""
        return self.name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "scriptName": self.script_name,
            "scriptPath": str(self.script_path),
            "description": self.description,
            "containerName": self.instance_name,
            "serverType": self.server_type,
        }


def instance_name_for(name: str, suffix: str = DEFAULT_INSTANCE_SUFFIX) -> str:
    """Return the container name convention for the catalog entry *name*."""
    return f"{name.lower()}{suffix}"


def parse_script_name(file_name: str, extensions: Sequence[str]) -> str | None:
    """Return the server name encoded in *file_name*, or ``None`` if it does not match."""
    match = _SCRIPT_NAME.match(file_name)
    if match is None:
        return None
    if match.group("ext").lower() not in {ext.lower() for ext in extensions}:
        return None
    return match.group("name")


def extract_description(lines: Sequence[str]) -> str:
    """Build a description from the leading comment *lines* of a script."""
    parts: list[str] = []
    for raw in lines[:DESCRIPTION_LINES]:
        line = raw.strip()
        if not line.startswith("#") or line.startswith("#!"):
            continue
        if STEP_MARKER in line:
            continue
        text = _COMMENT_PREFIX.sub("", line).strip()
        if text:
            parts.append(text)
    return " ".join(parts)


def read_description(script_path: Path) -> str:
    """Return the description for *script_path*, or ``""`` if it is unreadable."""
    try:
        with script_path.open(encoding="utf-8", errors="replace") as handle:
            head = list(islice(handle, DESCRIPTION_LINES))
    except OSError as exc:
        LOGGER.warning("Unable to read description from %s: %s", script_path, exc)
        return ""
    return extract_description(head)


class CatalogScanner:
    """Enumerate provisioning scripts in *catalog_dir*."""

    def __init__(
        self,
        catalog_dir: Path,
        *,
        extensions: Sequence[str] = (".ps1", ".sh"),
        instance_suffix: str = DEFAULT_INSTANCE_SUFFIX,
    ) -> None:
        """Store the catalog location and naming rules."""
        self.catalog_dir = Path(catalog_dir).expanduser()
        self.extensions = tuple(extensions)
        self.instance_suffix = instance_suffix

    def list_entries(self) -> list[CatalogEntry]:
        """Scan the catalog directory and return entries sorted by name."""
        try:
            children = sorted(self.catalog_dir.iterdir())
        except OSError as exc:
            raise CatalogError(
                f"Failed to read scripts directory {self.catalog_dir}: {exc}"
            ) from exc

        entries: dict[str, CatalogEntry] = {}
        for child in children:
            name = parse_script_name(child.name, self.extensions)
            if name is None or not child.is_file():
                continue
            entry = self._build_entry(name, child)
            if entry.id in entries:
                LOGGER.warning(
                    "Ignoring %s: catalog entry '%s' already provided by %s",
                    child.name,
                    entry.id,
                    entries[entry.id].script_name,
                )
                continue
            entries[entry.id] = entry
        return sorted(entries.values(), key=lambda item: item.name.lower())

    def resolve(self, script_ref: str) -> CatalogEntry:
        """Return the entry for the script file name *script_ref*."""
        candidate = (script_ref or "").strip()
        if not candidate:
            raise CatalogError("Script name is required.")
        if Path(candidate).name != candidate or candidate in {".", ".."}:
            raise CatalogError(f"Script reference must be a bare file name: {candidate!r}")
        name = parse_script_name(candidate, self.extensions)
        if name is None:
            raise CatalogError(
                f"'{candidate}' does not match the load<Name>MCP script naming convention."
            )
        path = self.catalog_dir / candidate
        if not path.is_file():
            raise CatalogError(f"Script not found: {path}")
        return self._build_entry(name, path)

    def _build_entry(self, name: str, path: Path) -> CatalogEntry:
        return CatalogEntry(
            id=name.lower(),
            name=name,
            script_path=path.resolve(),
            description=read_description(path),
            instance_name=instance_name_for(name, self.instance_suffix),
        )


__all__ = [
    "CatalogEntry",
    "CatalogError",
    "CatalogScanner",
    "extract_description",
    "instance_name_for",
    "parse_script_name",
    "read_description",
]
