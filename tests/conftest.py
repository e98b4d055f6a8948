"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from mcpctl.config import AppConfig, load_config
from mcpctl.executor import CommandResult, CommandSpec
from mcpctl.panel import ControlPanel

BRAVE_SCRIPT = """#!/usr/bin/env bash
# Brave Search MCP server
# Provides web search through the Brave API.
# Step 1: pull the image
# Step 2: start the container
echo "deploying brave"
"""

BRAVE_TEMPLATE = """# Brave MCP Server Settings
# Required Settings:
# BRAVE_API_KEY - API key from the Brave dashboard
# Optional Settings:
# BRAVE_REGION - search region
# BRAVE_REGION=us
"""


class FakeRunner:
    """Command runner double returning scripted results by argv prefix."""

    def __init__(self) -> None:
        """Start with no scripted responses."""
        self.calls: list[CommandSpec] = []
        self._responses: list[tuple[tuple[str, ...], list[CommandResult | Exception]]] = []

    def add(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        error: Exception | None = None,
    ) -> None:
        """Script a response for commands whose argv starts with *prefix*.

        Several responses for the same prefix are returned in order; the last
        one repeats.
        """
        outcome: CommandResult | Exception
        if error is not None:
            outcome = error
        else:
            outcome = CommandResult(
                argv=prefix, returncode=returncode, stdout=stdout, stderr=stderr
            )
        for known, queue in self._responses:
            if known == prefix:
                queue.append(outcome)
                return
        self._responses.append((prefix, [outcome]))

    def run(self, spec: CommandSpec) -> CommandResult:
        """Record *spec* and return the matching scripted result."""
        self.calls.append(spec)
        best: list[CommandResult | Exception] | None = None
        best_length = -1
        for prefix, queue in self._responses:
            if spec.argv[: len(prefix)] == prefix and len(prefix) > best_length:
                best, best_length = queue, len(prefix)
        if best is None:
            return CommandResult(argv=spec.argv, returncode=0)
        outcome = best.pop(0) if len(best) > 1 else best[0]
        if isinstance(outcome, Exception):
            raise outcome
        return CommandResult(
            argv=spec.argv,
            returncode=outcome.returncode,
            stdout=outcome.stdout,
            stderr=outcome.stderr,
        )

    @property
    def commands(self) -> list[tuple[str, ...]]:
        """Return the argv of every recorded call."""
        return [spec.argv for spec in self.calls]

    def docker_verbs(self) -> list[str]:
        """Return the docker sub-commands that were run, in order."""
        return [argv[1] for argv in self.commands if argv[0] == "docker" and len(argv) > 1]


def listing(*rows: Sequence[str]) -> str:
    """Render ``docker ps`` output for *rows* of (id, name, image, status)."""
    return "".join("|".join(row) + "\n" for row in rows)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a fresh command runner double."""
    return FakeRunner()


@pytest.fixture
def catalog_dir(tmp_path: Path) -> Path:
    """Create a catalog with a Brave script and settings template."""
    root = tmp_path / "scripts"
    root.mkdir()
    (root / "loadBraveMCP.sh").write_text(BRAVE_SCRIPT, encoding="utf-8")
    settings = root / "settings"
    settings.mkdir()
    (settings / "BraveSettings.example.env").write_text(BRAVE_TEMPLATE, encoding="utf-8")
    return root


@pytest.fixture
def app_config(tmp_path: Path, catalog_dir: Path) -> AppConfig:
    """Return a configuration rooted in the temporary directory."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "catalog_dir": str(catalog_dir),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "lock_timeout": 0.5,
            "refresh": {"settle_delay": 0, "interval": 0, "attempts": 3},
        },
    )


@pytest.fixture
def panel(app_config: AppConfig, fake_runner: FakeRunner) -> ControlPanel:
    """Return a control panel wired to the fake runner."""
    return ControlPanel.from_config(app_config, runner=fake_runner)
