"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2  # bad arguments, identifiers, settings keys or config
    ENVIRONMENT = 3  # runtime unreachable, catalog or settings I/O failed
    PROVIDER = 4  # a docker command or provisioning script failed
