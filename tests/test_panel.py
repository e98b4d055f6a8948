"""Tests for the request/response control panel."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner, listing

from mcpctl.config import AppConfig
from mcpctl.locking import LockManager
from mcpctl.panel import ControlPanel
from mcpctl.refresh import RefreshScheduler


@pytest.fixture(autouse=True)
def _no_refresh(panel: ControlPanel) -> None:
    """Keep background refreshes out of call recordings."""
    panel.orchestrator.refresher = RefreshScheduler.disabled()


def test_list_instances(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """The instances-data payload lists MCP containers."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(
            ("abc", "brave-mcp-server", "mcp/brave", "Up 1 hour"),
            ("def", "redis", "redis:7", "Up 1 hour"),
        ),
    )

    event, payload = panel.handle("list-instances")

    assert event == "instances-data"
    assert payload == {
        "servers": [
            {
                "id": "abc",
                "name": "brave-mcp-server",
                "image": "mcp/brave",
                "status": "Up 1 hour",
                "isRunning": True,
            }
        ]
    }


def test_list_instances_error(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Runtime failures become an error payload."""
    fake_runner.add("docker", "ps", returncode=1, stderr="daemon not running")

    event, payload = panel.handle("list-instances")

    assert event == "instances-data"
    assert "daemon not running" in str(payload["error"])


def test_list_catalog_marks_deployment_state(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Catalog entries are annotated and orphans reported separately."""
    fake_runner.add(
        "docker",
        "ps",
        stdout=listing(
            ("abc", "brave-mcp-server", "mcp/brave", "Exited (0) 1 hour ago"),
            ("zzz", "stray-mcp-server", "mcp/stray", "Up 1 hour"),
        ),
    )

    event, payload = panel.handle("list-catalog")

    assert event == "catalog-data"
    (brave,) = payload["servers"]  # type: ignore[misc]
    assert brave["name"] == "Brave"
    assert brave["isDeployed"] is True
    assert brave["isRunning"] is False
    (stray,) = payload["unmanaged"]  # type: ignore[misc]
    assert stray["containerName"] == "stray-mcp-server"


def test_list_catalog_survives_runtime_outage(
    panel: ControlPanel,
    fake_runner: FakeRunner,
) -> None:
    """Without a runtime the catalog is still listed as not deployed."""
    fake_runner.add("docker", "ps", returncode=1, stderr="daemon not running")

    _, payload = panel.handle("list-catalog")

    (brave,) = payload["servers"]  # type: ignore[misc]
    assert brave["isDeployed"] is False


def test_get_logs_joins_streams(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Logs are stdout and stderr joined by a newline."""
    fake_runner.add("docker", "logs", stdout="out", stderr="err")

    event, payload = panel.handle("get-logs", {"id": "abc"})

    assert event == "logs-data"
    assert payload == {"logs": "out\nerr"}
    assert fake_runner.commands == [("docker", "logs", "--tail", "500", "abc")]


def test_get_logs_without_stderr(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """An empty stderr adds no trailing separator."""
    fake_runner.add("docker", "logs", stdout="out")

    _, payload = panel.handle("get-logs", {"id": "abc"})

    assert payload == {"logs": "out"}


def test_get_logs_error(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Failed log reads become error payloads."""
    fake_runner.add("docker", "logs", returncode=1, stderr="No such container")

    _, payload = panel.handle("get-logs", {"id": "abc"})

    assert "No such container" in str(payload["error"])


@pytest.mark.parametrize("action", ["start", "stop", "restart"])
def test_action_results(panel: ControlPanel, fake_runner: FakeRunner, action: str) -> None:
    """Container actions answer with action-result payloads."""
    event, payload = panel.handle(action, {"id": "abc"})

    assert event == "action-result"
    assert payload["success"] is True
    assert payload["action"] == action
    assert payload["containerId"] == "abc"

    fake_runner.add("docker", action, returncode=1, stderr="boom")
    _, payload = panel.handle(action, {"id": "abc"})
    assert payload["success"] is False
    assert "boom" in str(payload["error"])


def test_remove_with_missing_image_warns(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Removing a container whose image is gone succeeds with a warning."""
    fake_runner.add("docker", "images", stdout="")

    event, payload = panel.handle(
        "remove", {"containerName": "brave-mcp-server", "removeImage": True}
    )

    assert event == "action-result"
    assert payload["success"] is True
    assert payload["action"] == "remove"
    assert payload["containerName"] == "brave-mcp-server"
    assert "mcp/brave" in str(payload["warning"])


def test_deploy_result(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Deploy saves the given settings and reports script output."""
    fake_runner.add("bash", stdout="done\n")

    event, payload = panel.handle(
        "deploy",
        {"scriptRef": "loadBraveMCP.sh", "settings": {"BRAVE_API_KEY": "k"}},
    )

    assert event == "deploy-result"
    assert payload["success"] is True
    assert payload["stdout"] == "done\n"
    assert panel.settings.load_values("Brave") == {"BRAVE_API_KEY": "k"}


def test_deploy_rejects_path_references(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Script references must be bare catalog file names."""
    event, payload = panel.handle("deploy", {"scriptRef": "../../bin/evilMCP.sh"})

    assert event == "deploy-result"
    assert payload["success"] is False
    assert fake_runner.calls == []


def test_deploy_failure_reports_streams(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Script failures carry stdout and stderr back to the caller."""
    fake_runner.add("bash", returncode=1, stdout="step 1\n", stderr="failed\n")

    _, payload = panel.handle(
        "deploy",
        {"scriptRef": "loadBraveMCP.sh", "settings": {"BRAVE_API_KEY": "k"}},
    )

    assert payload["success"] is False
    assert payload["stdout"] == "step 1\n"
    assert payload["stderr"] == "failed\n"
    assert "exited with status 1" in str(payload["error"])


def test_redeploy(panel: ControlPanel, fake_runner: FakeRunner) -> None:
    """Redeploy answers with an action-result payload."""
    panel.settings.save("Brave", {"BRAVE_API_KEY": "k"})

    event, payload = panel.handle(
        "redeploy", {"containerName": "brave-mcp-server", "scriptRef": "loadBraveMCP.sh"}
    )

    assert event == "action-result"
    assert payload["success"] is True
    assert payload["action"] == "redeploy"
    assert fake_runner.docker_verbs() == ["stop", "rm"]


def test_settings_round_trip(panel: ControlPanel) -> None:
    """Saved settings come back through get-settings."""
    event, payload = panel.handle(
        "save-settings", {"serverType": "Brave", "settings": {"BRAVE_API_KEY": "k"}}
    )
    assert (event, payload) == ("settings-data", {"success": True})

    event, payload = panel.handle("get-settings", {"serverType": "Brave"})

    assert event == "settings-data"
    assert payload["settings"] == {"BRAVE_REGION": "us", "BRAVE_API_KEY": "k"}
    assert payload["requiredSettings"] == ["BRAVE_API_KEY"]
    assert payload["optionalSettings"] == ["BRAVE_REGION"]


def test_save_settings_requires_settings(panel: ControlPanel) -> None:
    """A save request without settings leaves the stored values alone."""
    panel.settings.save("Brave", {"BRAVE_API_KEY": "k"})

    event, payload = panel.handle("save-settings", {"serverType": "Brave"})

    assert event == "settings-data"
    assert "'settings'" in str(payload["error"])
    assert panel.settings.load_values("Brave") == {"BRAVE_API_KEY": "k"}

    _, payload = panel.handle("save-settings", {"serverType": "Brave", "settings": ["x"]})
    assert "error" in payload
    assert panel.settings.load_values("Brave") == {"BRAVE_API_KEY": "k"}


def test_settings_errors(panel: ControlPanel) -> None:
    """Invalid server types produce error payloads."""
    _, payload = panel.handle("get-settings", {"serverType": "../etc"})
    assert "error" in payload

    _, payload = panel.handle("save-settings", {"serverType": "../etc", "settings": {}})
    assert payload["success"] is False
    assert "error" in payload


def test_unknown_request_and_missing_fields(panel: ControlPanel) -> None:
    """Unknown requests and incomplete payloads never raise."""
    event, payload = panel.handle("launch-rockets")
    assert event == "error"
    assert "Unknown request" in str(payload["error"])

    event, payload = panel.handle("start", {})
    assert event == "action-result"
    assert "'id'" in str(payload["error"])

    event, payload = panel.handle("deploy", {"scriptRef": "loadBraveMCP.sh", "settings": "x"})
    assert event == "deploy-result"
    assert "settings" in str(payload["error"])


def test_requests_lists_every_route(panel: ControlPanel) -> None:
    """The panel advertises the supported requests."""
    assert panel.requests == sorted(
        [
            "deploy",
            "get-logs",
            "get-settings",
            "list-catalog",
            "list-instances",
            "redeploy",
            "remove",
            "restart",
            "save-settings",
            "start",
            "stop",
        ]
    )


def test_unusable_lock_directory_fails_the_request(
    app_config: AppConfig,
    fake_runner: FakeRunner,
    tmp_path: Path,
) -> None:
    """Lock directories that cannot be created fail the action instead of raising."""
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    panel = ControlPanel.from_config(
        app_config,
        runner=fake_runner,
        locks=LockManager(blocker / "run" / "locks", 0.1),
        refresh=False,
    )

    event, payload = panel.handle("start", {"id": "brave-mcp-server"})

    assert event == "action-result"
    assert payload["success"] is False
    assert "Cannot open lock file" in str(payload["error"])
    assert fake_runner.calls == []


def test_closing_the_panel_finishes_pending_refreshes(
    app_config: AppConfig,
    fake_runner: FakeRunner,
) -> None:
    """Leaving the panel context waits for and stops the refresh worker."""
    with ControlPanel.from_config(app_config, runner=fake_runner) as panel:
        operation = panel.orchestrator.start("brave-mcp-server")
        assert operation.refresh is not None

    assert operation.refresh.done()
    assert not operation.refresh.result().satisfied
