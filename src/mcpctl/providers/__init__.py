"""Provider interfaces for mcpctl."""
from __future__ import annotations

from .docker import (
    DockerProvider,
    ImageRecord,
    Instance,
    InvalidIdentifierError,
    ListingParseError,
    RuntimeUnavailableError,
    status_indicates_running,
)
from .scripts import ScriptError, ScriptRunner

__all__ = [
    "DockerProvider",
    "ImageRecord",
    "Instance",
    "InvalidIdentifierError",
    "ListingParseError",
    "RuntimeUnavailableError",
    "ScriptError",
    "ScriptRunner",
    "status_indicates_running",
]
