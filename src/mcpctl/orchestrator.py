"""Lifecycle operations for MCP server containers.

Every operation runs under an exclusive per-target lock, is recorded in the
structured operation log step by step, and returns an :class:`Operation`
describing the outcome. Failures of Docker or a provisioning script never
escape as exceptions; they become a ``failed`` operation with the captured
output attached.
"""
from __future__ import annotations

import concurrent.futures
import logging
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .catalog import CatalogEntry, CatalogError
from .executor import CommandResult, LaunchError
from .locking import LockError, LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers.docker import DockerProvider, InvalidIdentifierError, RuntimeUnavailableError
from .providers.scripts import ScriptError, ScriptRunner
from .refresh import Expectation, ExpectedState, RefreshResult, RefreshScheduler
from .settings import SettingsError, SettingsStore, SettingsValidationError

LOGGER = logging.getLogger(__name__)

_OPERATION_ERRORS = (
    CatalogError,
    InvalidIdentifierError,
    LaunchError,
    RuntimeUnavailableError,
    ScriptError,
    SettingsError,
    SettingsValidationError,
)


class OperationKind(str, Enum):
    """Kinds of lifecycle operation."""

    DEPLOY = "deploy"
    REDEPLOY = "redeploy"
    REMOVE = "remove"
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    SAVE_SETTINGS = "save-settings"


class OperationStatus(str, Enum):
    """Progress of a lifecycle operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS: dict[OperationStatus, frozenset[OperationStatus]] = {
    OperationStatus.PENDING: frozenset({OperationStatus.RUNNING}),
    OperationStatus.RUNNING: frozenset({OperationStatus.SUCCEEDED, OperationStatus.FAILED}),
    OperationStatus.SUCCEEDED: frozenset(),
    OperationStatus.FAILED: frozenset(),
}


class OperationFailed(RuntimeError):
    """Raised inside an operation body to end it as failed."""


@dataclass(slots=True)
class Operation:
    """A requested lifecycle action and its outcome."""

    kind: OperationKind
    target: str
    status: OperationStatus = OperationStatus.PENDING
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    stdout: str = ""
    stderr: str = ""
    steps: list[dict[str, str]] = field(default_factory=list)
    refresh: concurrent.futures.Future[RefreshResult] | None = None

    def transition(self, status: OperationStatus) -> None:
        """Move to *status*, rejecting transitions the lifecycle does not allow."""
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(
                f"Operation cannot move from {self.status.value} to {status.value}."
            )
        self.status = status

    @property
    def finished(self) -> bool:
        """Return ``True`` once the operation has succeeded or failed."""
        return self.status in {OperationStatus.SUCCEEDED, OperationStatus.FAILED}

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the operation succeeded."""
        return self.status is OperationStatus.SUCCEEDED

    def capture(self, result: CommandResult) -> None:
        """Keep the output of *result* on the operation."""
        self.stdout = result.stdout
        self.stderr = result.stderr

    def to_payload(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "operation": self.kind.value,
            "target": self.target,
            "status": self.status.value,
            "success": self.succeeded,
            "message": self.message,
            "warnings": list(self.warnings),
            "steps": [dict(step) for step in self.steps],
        }
        if self.stdout:
            payload["stdout"] = self.stdout
        if self.stderr:
            payload["stderr"] = self.stderr
        return payload


OperationBody = Callable[[Operation, OperationScope], str]


class LifecycleOrchestrator:
    """Drive deploy, redeploy, remove, start, stop, restart and settings saves."""

    def __init__(
        self,
        *,
        docker: DockerProvider,
        scripts: ScriptRunner,
        settings: SettingsStore,
        locks: LockManager,
        logger: StructuredLogger,
        refresher: RefreshScheduler | None = None,
    ) -> None:
        """Store the collaborators used by every operation."""
        self.docker = docker
        self.scripts = scripts
        self.settings = settings
        self.locks = locks
        self.logger = logger
        self.refresher = refresher or RefreshScheduler.disabled()

    # ------------------------------------------------------------------
    # Container actions
    # ------------------------------------------------------------------
    def start(self, identifier: str) -> Operation:
        """Start the container *identifier*."""
        return self._container_action(
            OperationKind.START, identifier, self.docker.start, ExpectedState.RUNNING
        )

    def stop(self, identifier: str) -> Operation:
        """Stop the container *identifier*."""
        return self._container_action(
            OperationKind.STOP, identifier, self.docker.stop, ExpectedState.STOPPED
        )

    def restart(self, identifier: str) -> Operation:
        """Restart the container *identifier*."""
        return self._container_action(
            OperationKind.RESTART, identifier, self.docker.restart, ExpectedState.RUNNING
        )

    def remove(self, instance_name: str, *, remove_image: bool = False) -> Operation:
        """Stop and remove *instance_name*, optionally deleting its image."""

        def body(operation: Operation, scope: OperationScope) -> str:
            self._best_effort(operation, scope, "docker.stop", self.docker.stop, instance_name)
            result = self._docker_step(
                operation, scope, "docker.rm", self.docker.remove, instance_name
            )
            if not result.ok:
                operation.capture(result)
                raise OperationFailed(f"Failed to remove container: {result.summary()}")
            if remove_image:
                self._remove_image(operation, scope, instance_name)
            return f"Container {instance_name} removed."

        return self._execute(
            OperationKind.REMOVE,
            instance_name,
            body,
            args={"name": instance_name, "remove_image": remove_image},
            expectation=Expectation(instance_name, ExpectedState.ABSENT),
        )

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------
    def deploy(
        self,
        entry: CatalogEntry,
        settings: Mapping[str, object] | None = None,
    ) -> Operation:
        """Save *settings* (when given) and run the provisioning script for *entry*."""

        def body(operation: Operation, scope: OperationScope) -> str:
            if settings is not None:
                self._save_settings_step(operation, scope, entry.server_type, settings)
            self._provision(operation, scope, entry)
            return f"{entry.name} deployed."

        return self._execute(
            OperationKind.DEPLOY,
            entry.instance_name,
            body,
            args={"script": entry.script_name, "settings": sorted(settings or {})},
            expectation=Expectation(entry.instance_name, ExpectedState.PRESENT),
        )

    def redeploy(
        self,
        instance_name: str,
        entry: CatalogEntry,
        settings: Mapping[str, object] | None = None,
    ) -> Operation:
        """Replace the container *instance_name* with a fresh deployment of *entry*."""

        def body(operation: Operation, scope: OperationScope) -> str:
            if settings is not None:
                self._save_settings_step(operation, scope, entry.server_type, settings)
            self._best_effort(operation, scope, "docker.stop", self.docker.stop, instance_name)
            self._best_effort(operation, scope, "docker.rm", self.docker.remove, instance_name)
            self._provision(operation, scope, entry)
            return f"{entry.name} redeployed."

        return self._execute(
            OperationKind.REDEPLOY,
            instance_name,
            body,
            args={
                "name": instance_name,
                "script": entry.script_name,
                "settings": sorted(settings or {}),
            },
            expectation=Expectation(entry.instance_name, ExpectedState.PRESENT),
            extra_targets=(entry.instance_name,),
        )

    def save_settings(self, server_type: str, values: Mapping[str, object]) -> Operation:
        """Replace the stored settings for *server_type*."""

        def body(operation: Operation, scope: OperationScope) -> str:
            path = self._save_settings_step(operation, scope, server_type, values)
            return f"Settings saved to {path}."

        return self._execute(
            OperationKind.SAVE_SETTINGS,
            server_type,
            body,
            args={"server_type": server_type, "keys": sorted(values)},
            lock_target=f"settings-{server_type}",
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _container_action(
        self,
        kind: OperationKind,
        identifier: str,
        action: Callable[[str], CommandResult],
        expected: ExpectedState,
    ) -> Operation:
        def body(operation: Operation, scope: OperationScope) -> str:
            result = self._docker_step(
                operation, scope, f"docker.{kind.value}", action, identifier
            )
            operation.capture(result)
            if not result.ok:
                raise OperationFailed(f"Failed to {kind.value} container: {result.summary()}")
            return f"Container {identifier} {_PAST_TENSE[kind]}."

        return self._execute(
            kind,
            identifier,
            body,
            args={"id": identifier},
            expectation=Expectation(identifier, expected),
        )

    def _execute(
        self,
        kind: OperationKind,
        target: str,
        body: OperationBody,
        *,
        args: Mapping[str, object],
        expectation: Expectation | None = None,
        lock_target: str | None = None,
        extra_targets: Sequence[str] = (),
    ) -> Operation:
        operation = Operation(kind=kind, target=target)
        command = "settings set" if kind is OperationKind.SAVE_SETTINGS else f"server {kind.value}"
        with self.logger.operation(
            command,
            args=args,
            target={"kind": "server", "name": target},
        ) as scope:
            try:
                with self.locks.mutate_targets([lock_target or target, *extra_targets]) as bundle:
                    scope.set_lock_wait_ms(bundle.wait_ms)
                    operation.transition(OperationStatus.RUNNING)
                    message = body(operation, scope)
            except LockTimeoutError as exc:
                LOGGER.warning("%s", exc)
                _step(operation, scope, "lock.acquire", status="error", detail=str(exc))
                return self._fail(
                    operation, scope, f"An operation is already in progress for '{target}'."
                )
            except LockError as exc:
                _step(operation, scope, "lock.acquire", status="error", detail=str(exc))
                return self._fail(operation, scope, str(exc))
            except OperationFailed as exc:
                return self._fail(operation, scope, str(exc))
            except _OPERATION_ERRORS as exc:
                return self._fail(operation, scope, str(exc))

            operation.message = message
            operation.transition(OperationStatus.SUCCEEDED)
            if operation.warnings:
                scope.warning(message, warnings=operation.warnings, changed=1)
            else:
                scope.success(message, changed=1)

        if expectation is not None:
            operation.refresh = self.refresher.schedule(expectation)
        return operation

    def _fail(self, operation: Operation, scope: OperationScope, message: str) -> Operation:
        if operation.status is OperationStatus.PENDING:
            operation.transition(OperationStatus.RUNNING)
        operation.message = message
        operation.transition(OperationStatus.FAILED)
        context = {"warnings": list(operation.warnings)} if operation.warnings else None
        scope.error(message, context=context)
        return operation

    def _docker_step(
        self,
        operation: Operation,
        scope: OperationScope,
        name: str,
        action: Callable[[str], CommandResult],
        identifier: str,
    ) -> CommandResult:
        result = action(identifier)
        _step(
            operation,
            scope,
            name,
            status="success" if result.ok else "error",
            detail=None if result.ok else result.summary(),
        )
        return result

    def _best_effort(
        self,
        operation: Operation,
        scope: OperationScope,
        name: str,
        action: Callable[[str], CommandResult],
        identifier: str,
    ) -> None:
        try:
            result = action(identifier)
        except LaunchError as exc:
            _step(operation, scope, name, status="warning", detail=str(exc))
            return
        if result.ok:
            _step(operation, scope, name)
            return
        _step(operation, scope, name, status="warning", detail=result.summary())

    def _remove_image(
        self,
        operation: Operation,
        scope: OperationScope,
        instance_name: str,
    ) -> None:
        pattern = self.docker.image_pattern(instance_name)
        try:
            matches = self.docker.find_images(pattern)
        except (LaunchError, RuntimeUnavailableError) as exc:
            self._warn(operation, scope, "docker.images", f"Could not list images: {exc}")
            return
        if not matches:
            self._warn(
                operation,
                scope,
                "docker.images",
                f"Container removed but no image matching '{pattern}' was found.",
            )
            return
        image = matches[0]
        _step(operation, scope, "docker.images", detail=f"{image.repository} ({image.image_id})")
        try:
            result = self.docker.remove_image(image.image_id)
        except (LaunchError, InvalidIdentifierError) as exc:
            self._warn(
                operation,
                scope,
                "docker.rmi",
                f"Container removed but image removal failed: {exc}",
            )
            return
        if not result.ok:
            self._warn(
                operation,
                scope,
                "docker.rmi",
                f"Container removed but image removal failed: {result.summary()}",
            )
            return
        _step(operation, scope, "docker.rmi", detail=image.image_id)

    def _warn(self, operation: Operation, scope: OperationScope, name: str, message: str) -> None:
        operation.warnings.append(message)
        _step(operation, scope, name, status="warning", detail=message)

    def _save_settings_step(
        self,
        operation: Operation,
        scope: OperationScope,
        server_type: str,
        values: Mapping[str, object],
    ) -> str:
        path = self.settings.save(server_type, values)
        _step(operation, scope, "settings.save", detail=str(path))
        return str(path)

    def _provision(self, operation: Operation, scope: OperationScope, entry: CatalogEntry) -> None:
        document = self.settings.load(entry.server_type)
        missing = document.missing_required()
        if missing:
            detail = ", ".join(missing)
            _step(operation, scope, "settings.validate", status="error", detail=detail)
            raise OperationFailed(f"Missing required settings for {entry.name}: {detail}.")
        _step(operation, scope, "settings.validate")

        settings_file = self.settings.settings_path(entry.server_type)
        result = self.scripts.run(
            entry.script_path,
            settings_file=settings_file if settings_file.exists() else None,
        )
        operation.capture(result)
        if not result.ok:
            detail = f"exit {result.returncode}"
            _step(operation, scope, "script.run", status="error", detail=detail)
            raise OperationFailed(
                f"Deployment script {entry.script_name} exited with status {result.returncode}."
            )
        _step(operation, scope, "script.run", detail=entry.script_name)


_PAST_TENSE = {
    OperationKind.START: "started",
    OperationKind.STOP: "stopped",
    OperationKind.RESTART: "restarted",
}


def _step(
    operation: Operation,
    scope: OperationScope,
    name: str,
    *,
    status: str = "success",
    detail: str | None = None,
) -> None:
    step = {"name": name, "status": status}
    if detail:
        step["detail"] = detail
    operation.steps.append(step)
    scope.add_step(name, status=status, detail=detail)


__all__ = [
    "LifecycleOrchestrator",
    "Operation",
    "OperationFailed",
    "OperationKind",
    "OperationStatus",
]
