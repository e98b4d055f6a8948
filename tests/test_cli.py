"""Tests for the mcpctl CLI."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeRunner, listing
from typer.testing import CliRunner, Result

from mcpctl import __version__
from mcpctl.cli import RuntimeContext, app, build_runtime
from mcpctl.config import AppConfig
from mcpctl.exit_codes import ExitCode

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


@pytest.fixture
def runtime(app_config: AppConfig, fake_runner: FakeRunner) -> RuntimeContext:
    """Return runtime objects wired to the fake command runner."""
    return build_runtime(app_config, runner=fake_runner)


def _invoke(runtime: RuntimeContext, *args: str) -> Result:
    return runner.invoke(app, list(args), obj=runtime)


def _last_operation(runtime: RuntimeContext) -> dict[str, object]:
    lines = runtime.logger.path.read_text(encoding="utf-8").strip().splitlines()
    return json.loads(lines[-1])


def test_version_option_outputs_package_version(runtime: RuntimeContext) -> None:
    """CLI ``--version`` flag emits the package version."""
    result = _invoke(runtime, "--version")

    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_invocation_without_subcommand_shows_help(runtime: RuntimeContext) -> None:
    """Calling the CLI without a subcommand shows help output."""
    result = _invoke(runtime)

    assert result.exit_code == 0
    assert "Deploy and manage MCP server containers" in result.stdout


def test_invalid_config_file_is_a_validation_error(tmp_path: Path) -> None:
    """A malformed configuration file exits with the validation code."""
    config_file = tmp_path / "config.yml"
    config_file.write_text("lock_timeout: soon\n", encoding="utf-8")

    result = runner.invoke(app, ["--config-file", str(config_file), "config", "show"])

    assert result.exit_code == ExitCode.VALIDATION


def test_config_show_json(runtime: RuntimeContext, app_config: AppConfig) -> None:
    """`config show --json` emits the resolved configuration."""
    result = _invoke(runtime, "config", "show", "--json")

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["catalog_dir"] == str(app_config.catalog_dir)
    assert payload["settings_dir"] == str(app_config.catalog_dir / "settings")
    assert payload["lock_timeout"] == 0.5


def test_config_show_renders_table(runtime: RuntimeContext) -> None:
    """`config show` prints the merged configuration in a table."""
    result = _invoke(runtime, "config", "show")

    assert result.exit_code == 0
    assert "catalog_dir" in result.stdout
    assert "lock_timeout" in result.stdout


def test_catalog_list_table(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`catalog list` shows entries with their deployment state."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(("abc", "brave-mcp-server", "mcp/brave", "Up 2 hours")),
    )

    result = _invoke(runtime, "catalog", "list")

    assert result.exit_code == 0
    assert "Brave" in result.stdout
    assert "running" in result.stdout
    assert _last_operation(runtime)["command"] == "catalog list"


def test_catalog_list_json_includes_unmanaged(
    runtime: RuntimeContext,
    fake_runner: FakeRunner,
) -> None:
    """`catalog list --all --json` reports orphaned MCP containers."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(("zzz", "stray-mcp-server", "mcp/stray", "Exited (0) 1 day ago")),
    )

    result = _invoke(runtime, "catalog", "list", "--all", "--json")

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    (brave,) = payload["servers"]  # type: ignore[misc]
    assert brave["isDeployed"] is False
    (stray,) = payload["unmanaged"]  # type: ignore[misc]
    assert stray["containerName"] == "stray-mcp-server"


def test_server_list_reports_runtime_failure(
    runtime: RuntimeContext,
    fake_runner: FakeRunner,
) -> None:
    """An unreachable runtime is an environment error."""
    fake_runner.add("docker", "ps", returncode=1, stderr="daemon-unreachable")

    result = _invoke(runtime, "server", "list")

    assert result.exit_code == ExitCode.ENVIRONMENT
    assert "daemon-unreachable" in result.stdout
    entry = _last_operation(runtime)
    assert entry["result"]["status"] == "error"  # type: ignore[index]


def test_server_list_json(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server list --json` emits the instance payload."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(("abc", "brave-mcp-server", "mcp/brave", "Up 2 hours")),
    )

    result = _invoke(runtime, "server", "list", "--json")

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["servers"] == [
        {
            "id": "abc",
            "name": "brave-mcp-server",
            "image": "mcp/brave",
            "status": "Up 2 hours",
            "isRunning": True,
        }
    ]


def test_server_logs_uses_tail(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server logs` forwards the tail size to the runtime."""
    fake_runner.add("docker", "logs", stdout="listening on :8080")

    result = _invoke(runtime, "server", "logs", "abc", "--tail", "20")

    assert result.exit_code == 0
    assert "listening on :8080" in result.stdout
    assert fake_runner.commands == [("docker", "logs", "--tail", "20", "abc")]


def test_server_start_reports_success(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server start --no-wait` starts the container without refreshing."""
    result = _invoke(runtime, "server", "start", "abc", "--no-wait")

    assert result.exit_code == 0
    assert "Container abc started." in result.stdout
    assert fake_runner.commands == [("docker", "start", "abc")]


def test_server_stop_waits_for_refresh(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """Without --no-wait the CLI reports the refreshed runtime state."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(("abc", "brave-mcp-server", "mcp/brave", "Exited (0) 1 second ago")),
    )

    result = _invoke(runtime, "server", "stop", "brave-mcp-server", "--json")

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["status"] == "succeeded"
    assert payload["refresh"] == {"satisfied": True, "attempts": 1, "error": None}


def test_server_action_failure_exit_code(
    runtime: RuntimeContext,
    fake_runner: FakeRunner,
) -> None:
    """A failing runtime command exits with the provider code."""
    fake_runner.add("docker", "restart", returncode=1, stderr="no-such-container")

    result = _invoke(runtime, "server", "restart", "abc", "--no-wait")

    assert result.exit_code == ExitCode.PROVIDER
    assert "no-such-container" in result.stdout


def test_invalid_identifier_is_rejected(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """Identifiers that could smuggle options are refused before running docker."""
    result = _invoke(runtime, "server", "stop", "--", "-rf")

    assert result.exit_code == ExitCode.VALIDATION
    assert fake_runner.calls == []


def test_server_remove_with_image(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server remove --image` removes the container and its image."""
    fake_runner.add("docker", "images", stdout="sha123 mcp/brave\nsha456 redis\n")

    result = _invoke(runtime, "server", "remove", "brave-mcp-server", "--image", "--no-wait")

    assert result.exit_code == 0
    assert fake_runner.docker_verbs() == ["stop", "rm", "images", "rmi"]
    assert ("docker", "rmi", "-f", "sha123") in fake_runner.commands


def test_server_deploy_with_settings(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server deploy --set` stores settings and runs the script."""
    fake_runner.add("bash", stdout="deploying brave\n")

    result = _invoke(
        runtime, "server", "deploy", "loadBraveMCP.sh", "--set", "BRAVE_API_KEY=k", "--no-wait"
    )

    assert result.exit_code == 0
    assert "deploying brave" in result.stdout
    assert runtime.panel.settings.load_values("Brave") == {"BRAVE_API_KEY": "k"}
    (spec,) = fake_runner.calls
    assert spec.argv[0] == "bash"


def test_server_deploy_missing_settings(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """Deploying without required settings fails before the script runs."""
    result = _invoke(runtime, "server", "deploy", "loadBraveMCP.sh", "--no-wait")

    assert result.exit_code == ExitCode.PROVIDER
    assert "BRAVE_API_KEY" in result.stdout
    assert fake_runner.calls == []


def test_server_deploy_unknown_script(runtime: RuntimeContext) -> None:
    """Unknown catalog scripts are a validation error."""
    result = _invoke(runtime, "server", "deploy", "loadNopeMCP.sh")

    assert result.exit_code == ExitCode.VALIDATION


def test_server_deploy_bad_assignment(runtime: RuntimeContext) -> None:
    """`--set` values must be KEY=VALUE pairs."""
    result = _invoke(runtime, "server", "deploy", "loadBraveMCP.sh", "--set", "BRAVE_API_KEY")

    assert result.exit_code == ExitCode.VALIDATION
    assert "Expected KEY=VALUE" in result.stdout


def test_server_redeploy(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`server redeploy` replaces the container from its script."""
    runtime.panel.settings.save("Brave", {"BRAVE_API_KEY": "k"})

    result = _invoke(
        runtime, "server", "redeploy", "brave-mcp-server", "loadBraveMCP.sh", "--no-wait"
    )

    assert result.exit_code == 0
    assert fake_runner.commands[:2] == [
        ("docker", "stop", "brave-mcp-server"),
        ("docker", "rm", "brave-mcp-server"),
    ]
    assert fake_runner.commands[2][0] == "bash"


def test_settings_set_merges_then_replaces(runtime: RuntimeContext) -> None:
    """`settings set` merges by default and replaces with --replace."""
    result = _invoke(runtime, "settings", "set", "Brave", "BRAVE_API_KEY=k")
    assert result.exit_code == 0

    result = _invoke(runtime, "settings", "set", "Brave", "BRAVE_REGION=eu")
    assert result.exit_code == 0
    assert runtime.panel.settings.load_values("Brave") == {
        "BRAVE_API_KEY": "k",
        "BRAVE_REGION": "eu",
    }

    result = _invoke(runtime, "settings", "set", "Brave", "OTHER=1", "--replace")
    assert result.exit_code == 0
    assert runtime.panel.settings.load_values("Brave") == {"OTHER": "1"}
    assert _last_operation(runtime)["command"] == "settings set"


def test_settings_show_json(runtime: RuntimeContext) -> None:
    """`settings show --json` returns the settings document."""
    runtime.panel.settings.save("Brave", {"BRAVE_API_KEY": "k"})

    result = _invoke(runtime, "settings", "show", "Brave", "--json")

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["settings"] == {"BRAVE_REGION": "us", "BRAVE_API_KEY": "k"}
    assert payload["requiredSettings"] == ["BRAVE_API_KEY"]


def test_settings_show_flags_missing_required(runtime: RuntimeContext) -> None:
    """The settings table marks required settings that have no value."""
    result = _invoke(runtime, "settings", "show", "Brave")

    assert result.exit_code == 0
    assert "required (missing)" in result.stdout
    assert "BRAVE_REGION" in result.stdout


def test_settings_invalid_server_type(runtime: RuntimeContext) -> None:
    """Server types that are not plain names are rejected."""
    result = _invoke(runtime, "settings", "show", "../etc")
    assert result.exit_code == ExitCode.VALIDATION

    result = _invoke(runtime, "settings", "set", "../etc", "A=1")
    assert result.exit_code == ExitCode.VALIDATION


def test_request_bridge(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """`request` dispatches to the control panel and prints the event."""
    result = _invoke(runtime, "request", "start", "--payload", '{"id": "abc"}')

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["event"] == "action-result"
    assert payload["payload"]["success"] is True  # type: ignore[index]
    assert fake_runner.commands == [("docker", "start", "abc")]


def test_request_bridge_errors(runtime: RuntimeContext, fake_runner: FakeRunner) -> None:
    """Unknown requests and bad payloads map to exit codes."""
    result = _invoke(runtime, "request", "launch-rockets")
    assert result.exit_code == ExitCode.VALIDATION
    assert _extract_json(result.stdout)["event"] == "error"

    result = _invoke(runtime, "request", "start", "--payload", "[1, 2]")
    assert result.exit_code == ExitCode.VALIDATION

    result = _invoke(runtime, "request", "start", "--payload", "{not json")
    assert result.exit_code == ExitCode.VALIDATION

    fake_runner.add("docker", "logs", returncode=1, stderr="No such container")
    result = _invoke(runtime, "request", "get-logs", "--payload", '{"id": "abc"}')
    assert result.exit_code == ExitCode.PROVIDER
