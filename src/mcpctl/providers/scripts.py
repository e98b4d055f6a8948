"""Provisioning script invocation."""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from pathlib import Path

from ..config import SCRIPT_PLACEHOLDER
from ..executor import CommandResult, CommandRunner, CommandSpec

SETTINGS_ENV_VAR = "MCPCTL_SETTINGS_FILE"


class ScriptError(RuntimeError):
    """Raised when a provisioning script cannot be invoked."""


class ScriptRunner:
    """Run provisioning scripts with a fixed, non-interactive profile.

    The interpreter is chosen by file extension; each profile is an argv list
    containing a ``{script}`` placeholder. Scripts run from their own directory
    with stdin closed and their output capped at *max_output_bytes* per stream.
    """

    def __init__(
        self,
        runner: CommandRunner,
        *,
        interpreters: Mapping[str, Sequence[str]],
        max_output_bytes: int,
    ) -> None:
        """Store the command runner and interpreter profiles."""
        self.runner = runner
        self.interpreters = {
            suffix.lower(): tuple(argv) for suffix, argv in interpreters.items()
        }
        self.max_output_bytes = max_output_bytes

    def build_command(
        self,
        script_path: Path,
        *,
        settings_file: Path | None = None,
    ) -> CommandSpec:
        """Return the command used to run *script_path*."""
        profile = self.interpreters.get(script_path.suffix.lower())
        if profile is None:
            raise ScriptError(f"No interpreter configured for '{script_path.suffix}' scripts.")
        argv = tuple(
            str(script_path) if part == SCRIPT_PLACEHOLDER else part for part in profile
        )
        env: dict[str, str] = {}
        if settings_file is not None:
            env[SETTINGS_ENV_VAR] = str(settings_file)
        return CommandSpec(
            argv=argv,
            cwd=script_path.parent,
            env=env,
            max_output_bytes=self.max_output_bytes,
        )

    def run(self, script_path: Path, *, settings_file: Path | None = None) -> CommandResult:
        """Run *script_path* and return its captured result."""
        if not script_path.is_file():
            raise ScriptError(f"Script not found: {script_path}")
        return self.runner.run(self.build_command(script_path, settings_file=settings_file))


__all__ = ["ScriptError", "ScriptRunner", "SETTINGS_ENV_VAR"]
