"""Request/response surface used by the CLI and any front end.

Each request returns a tagged payload dictionary instead of raising. The
``handle`` dispatcher maps request names to the response event names a UI
listens for:

==================  ==================
Request             Response event
==================  ==================
list-instances      instances-data
list-catalog        catalog-data
get-logs            logs-data
start/stop/restart  action-result
remove              action-result
deploy              deploy-result
redeploy            action-result
get-settings        settings-data
save-settings       settings-data
==================  ==================
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from .catalog import CatalogError, CatalogScanner
from .config import AppConfig
from .executor import CommandRunner, LaunchError, SubprocessRunner
from .locking import LockManager
from .logging import StructuredLogger
from .orchestrator import LifecycleOrchestrator, Operation
from .providers.docker import DockerProvider, InvalidIdentifierError, RuntimeUnavailableError
from .providers.scripts import ScriptRunner
from .reconcile import ServerView, reconcile
from .refresh import RefreshScheduler
from .settings import SettingsError, SettingsStore, SettingsValidationError

LOGGER = logging.getLogger(__name__)

Payload = dict[str, object]

_REQUEST_ERRORS = (
    CatalogError,
    InvalidIdentifierError,
    LaunchError,
    RuntimeUnavailableError,
    SettingsError,
    SettingsValidationError,
    ValueError,
)


class RequestError(ValueError):
    """Raised for unknown requests or malformed request payloads."""


@dataclass(frozen=True, slots=True)
class _Route:
    event: str
    handler: Callable[[Mapping[str, object]], Payload]


class ControlPanel:
    """Answer UI requests using the catalog, runtime, settings and orchestrator."""

    def __init__(
        self,
        *,
        catalog: CatalogScanner,
        docker: DockerProvider,
        settings: SettingsStore,
        orchestrator: LifecycleOrchestrator,
        logs_tail: int = 500,
    ) -> None:
        """Store the collaborators used to answer requests."""
        self.catalog = catalog
        self.docker = docker
        self.settings = settings
        self.orchestrator = orchestrator
        self.logs_tail = logs_tail
        self._routes: dict[str, _Route] = {
            "list-instances": _Route("instances-data", lambda _: self.list_instances()),
            "list-catalog": _Route(
                "catalog-data",
                lambda payload: self.list_catalog(
                    include_unmanaged=bool(payload.get("includeUnmanaged", True))
                ),
            ),
            "get-logs": _Route(
                "logs-data",
                lambda payload: self.get_logs(_require(payload, "id")),
            ),
            "start": _Route("action-result", lambda payload: self.start(_require(payload, "id"))),
            "stop": _Route("action-result", lambda payload: self.stop(_require(payload, "id"))),
            "restart": _Route(
                "action-result",
                lambda payload: self.restart(_require(payload, "id")),
            ),
            "remove": _Route(
                "action-result",
                lambda payload: self.remove(
                    _require(payload, "containerName"),
                    remove_image=bool(payload.get("removeImage", False)),
                ),
            ),
            "deploy": _Route(
                "deploy-result",
                lambda payload: self.deploy(
                    _require(payload, "scriptRef"),
                    _optional_settings(payload),
                ),
            ),
            "redeploy": _Route(
                "action-result",
                lambda payload: self.redeploy(
                    _require(payload, "containerName"),
                    _require(payload, "scriptRef"),
                    _optional_settings(payload),
                ),
            ),
            "get-settings": _Route(
                "settings-data",
                lambda payload: self.get_settings(_require(payload, "serverType")),
            ),
            "save-settings": _Route(
                "settings-data",
                lambda payload: self.save_settings(
                    _require(payload, "serverType"),
                    _required_settings(payload),
                ),
            ),
        }

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        runner: CommandRunner | None = None,
        logger: StructuredLogger | None = None,
        locks: LockManager | None = None,
        refresh: bool = True,
    ) -> ControlPanel:
        """Wire a panel from resolved configuration."""
        command_runner = runner or SubprocessRunner(
            default_max_output_bytes=config.scripts.max_output_bytes
        )
        catalog = CatalogScanner(
            config.catalog_dir,
            extensions=config.scripts.extensions,
            instance_suffix=config.runtime.instance_suffix,
        )
        docker = DockerProvider(
            command_runner,
            docker_bin=config.runtime.docker_bin,
            image_namespace=config.runtime.image_namespace,
            instance_suffix=config.runtime.instance_suffix,
        )
        scripts = ScriptRunner(
            command_runner,
            interpreters=config.scripts.interpreters,
            max_output_bytes=config.scripts.max_output_bytes,
        )
        settings = SettingsStore(config.settings_dir)

        def snapshot() -> list[ServerView]:
            return reconcile(
                catalog.list_entries(),
                docker.list_instances(),
                include_unmanaged=True,
            )

        refresher = (
            RefreshScheduler(
                snapshot,
                strategy=config.refresh.strategy,
                settle_delay=config.refresh.settle_delay,
                attempts=config.refresh.attempts,
                interval=config.refresh.interval,
            )
            if refresh
            else RefreshScheduler.disabled()
        )
        orchestrator = LifecycleOrchestrator(
            docker=docker,
            scripts=scripts,
            settings=settings,
            locks=locks or LockManager(config.runtime_dir / "locks", config.lock_timeout),
            logger=logger or StructuredLogger(config.logs_dir),
            refresher=refresher,
        )
        return cls(
            catalog=catalog,
            docker=docker,
            settings=settings,
            orchestrator=orchestrator,
            logs_tail=config.runtime.logs_tail,
        )

    def close(self, *, wait: bool = True) -> None:
        """Stop the background refresh worker."""
        self.orchestrator.refresher.shutdown(wait=wait)

    def __enter__(self) -> ControlPanel:
        """Return the panel; leaving the block calls :meth:`close`."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the panel."""
        self.close()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------
    def handle(
        self,
        request: str,
        payload: Mapping[str, object] | None = None,
    ) -> tuple[str, Payload]:
        """Dispatch *request* and return ``(event, payload)``."""
        route = self._routes.get(request)
        if route is None:
            known = ", ".join(sorted(self._routes))
            return "error", {"error": f"Unknown request '{request}'. Known requests: {known}."}
        try:
            return route.event, route.handler(payload or {})
        except RequestError as exc:
            return route.event, {"error": str(exc)}

    @property
    def requests(self) -> list[str]:
        """Return the supported request names."""
        return sorted(self._routes)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def snapshot(self, *, include_unmanaged: bool = False) -> list[ServerView]:
        """Return the current reconciled views."""
        return reconcile(
            self.catalog.list_entries(),
            self.docker.list_instances(),
            include_unmanaged=include_unmanaged,
        )

    def list_instances(self) -> Payload:
        """Return every MCP container known to the runtime."""
        try:
            instances = self.docker.list_instances()
        except RuntimeUnavailableError as exc:
            return {"error": str(exc)}
        return {"servers": [instance.to_dict() for instance in instances]}

    def list_catalog(self, *, include_unmanaged: bool = True) -> Payload:
        """Return catalog entries annotated with their deployment state."""
        try:
            entries = self.catalog.list_entries()
        except CatalogError as exc:
            return {"error": str(exc)}
        try:
            instances = self.docker.list_instances()
        except RuntimeUnavailableError as exc:
            LOGGER.warning("Listing catalog without runtime state: %s", exc)
            instances = []
        views = reconcile(entries, instances, include_unmanaged=include_unmanaged)
        return {
            "servers": [view.to_dict() for view in views if view.managed],
            "unmanaged": [view.to_dict() for view in views if not view.managed],
        }

    def get_logs(self, identifier: str, *, tail: int | None = None) -> Payload:
        """Return the recent log output of *identifier*."""
        try:
            result = self.docker.logs(identifier, tail=tail or self.logs_tail)
        except _REQUEST_ERRORS as exc:
            return {"error": f"Failed to get logs: {exc}"}
        if not result.ok:
            return {"error": f"Failed to get logs: {result.summary()}"}
        logs = result.stdout
        if result.stderr:
            logs += f"\n{result.stderr}"
        return {"logs": logs}

    def get_settings(self, server_type: str) -> Payload:
        """Return the settings document for *server_type*."""
        try:
            document = self.settings.load(server_type)
        except _REQUEST_ERRORS as exc:
            return {"error": f"Failed to load server settings: {exc}"}
        return document.to_dict()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def start(self, identifier: str) -> Payload:
        """Start a container."""
        return _action_payload(self.orchestrator.start(identifier), containerId=identifier)

    def stop(self, identifier: str) -> Payload:
        """Stop a container."""
        return _action_payload(self.orchestrator.stop(identifier), containerId=identifier)

    def restart(self, identifier: str) -> Payload:
        """Restart a container."""
        return _action_payload(self.orchestrator.restart(identifier), containerId=identifier)

    def remove(self, instance_name: str, *, remove_image: bool = False) -> Payload:
        """Remove a container and optionally its image."""
        operation = self.orchestrator.remove(instance_name, remove_image=remove_image)
        payload = _action_payload(operation, containerName=instance_name)
        if operation.succeeded and operation.warnings:
            payload["warning"] = " ".join(operation.warnings)
        return payload

    def deploy(self, script_ref: str, settings: Mapping[str, object] | None = None) -> Payload:
        """Deploy the catalog entry whose script is *script_ref*."""
        try:
            entry = self.catalog.resolve(script_ref)
        except CatalogError as exc:
            return {"success": False, "error": str(exc)}
        operation = self.orchestrator.deploy(entry, settings)
        payload: Payload = {"success": operation.succeeded}
        if not operation.succeeded:
            payload["error"] = operation.message
        if operation.stdout:
            payload["stdout"] = operation.stdout
        if operation.stderr:
            payload["stderr"] = operation.stderr
        payload["operation"] = operation.to_payload()
        return payload

    def redeploy(
        self,
        instance_name: str,
        script_ref: str,
        settings: Mapping[str, object] | None = None,
    ) -> Payload:
        """Replace *instance_name* with a fresh deployment of *script_ref*."""
        try:
            entry = self.catalog.resolve(script_ref)
        except CatalogError as exc:
            return {
                "success": False,
                "error": str(exc),
                "action": "redeploy",
                "containerName": instance_name,
            }
        operation = self.orchestrator.redeploy(instance_name, entry, settings)
        return _action_payload(operation, containerName=instance_name)

    def save_settings(self, server_type: str, values: Mapping[str, object]) -> Payload:
        """Replace the stored settings for *server_type*."""
        operation = self.orchestrator.save_settings(server_type, values)
        if operation.succeeded:
            return {"success": True}
        return {"success": False, "error": f"Failed to save server settings: {operation.message}"}


def _action_payload(operation: Operation, **identity: str) -> Payload:
    payload: Payload = {"success": operation.succeeded, "action": operation.kind.value}
    payload.update(identity)
    if not operation.succeeded:
        payload["error"] = operation.message
    payload["operation"] = operation.to_payload()
    return payload


def _require(payload: Mapping[str, object], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise RequestError(f"Request payload is missing '{key}'.")
    return value.strip()


def _required_settings(payload: Mapping[str, object]) -> dict[str, object]:
    settings = _optional_settings(payload)
    if settings is None:
        raise RequestError("Request payload is missing 'settings'.")
    return settings


def _optional_settings(payload: Mapping[str, object]) -> dict[str, object] | None:
    value = payload.get("settings")
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise RequestError("'settings' must be an object of KEY: value pairs.")
    return {str(key): item for key, item in value.items()}


__all__ = ["ControlPanel", "RequestError"]
