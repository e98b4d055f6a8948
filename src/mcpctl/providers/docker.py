"""Docker provider: runtime inspection and container lifecycle commands."""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass

from ..executor import CommandResult, CommandRunner, CommandSpec, LaunchError

LOGGER = logging.getLogger(__name__)

LISTING_DELIMITER = "|"
LISTING_FORMAT = "{{.ID}}|{{.Names}}|{{.Image}}|{{.Status}}"
IMAGES_FORMAT = "{{.ID}} {{.Repository}}"

_IDENTIFIER = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")
_RUNNING_STATUS = re.compile(r"\bup\b", re.IGNORECASE)


class RuntimeUnavailableError(RuntimeError):
    """Raised when the runtime cannot be queried."""


class ListingParseError(ValueError):
    """Raised for a malformed line in the instance listing."""


class InvalidIdentifierError(ValueError):
    """Raised when a container or image identifier is not safe to pass on."""


def status_indicates_running(status_text: str) -> bool:
    """Return ``True`` when a Docker status string describes a running container.

    Docker reports running containers as ``Up 3 hours`` (optionally followed by
    ``(healthy)`` or ``(Paused)``), and stopped ones as ``Exited (0) ...`` or
    ``Created``. Matching the word ``up`` is the whole rule.
    """
    return bool(_RUNNING_STATUS.search(status_text or ""))


def validate_identifier(value: str, *, label: str = "identifier") -> str:
    """Validate and normalise a container name, id or image id."""
    normalized = (value or "").strip()
    if not normalized:
        raise InvalidIdentifierError(f"Container {label} must be a non-empty string.")
    if not _IDENTIFIER.fullmatch(normalized):
        raise InvalidIdentifierError(
            f"Container {label} '{normalized}' must match [A-Za-z0-9][A-Za-z0-9_.-]*."
        )
    return normalized


@dataclass(frozen=True, slots=True)
class Instance:
    """A container reported by the runtime."""

    runtime_id: str
    name: str
    image: str
    status_text: str

    @property
    def is_running(self) -> bool:
        """Return whether the runtime reports the container as up."""
        return status_indicates_running(self.status_text)

    def is_mcp(self, namespace: str) -> bool:
        """Return whether the image belongs to the MCP image *namespace*."""
        return bool(namespace) and namespace.lower() in self.image.lower()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.runtime_id,
            "name": self.name,
            "image": self.image,
            "status": self.status_text,
            "isRunning": self.is_running,
        }


def parse_listing_line(line: str) -> Instance:
    """Parse one ``id|name|image|status`` record."""
    parts = [part.strip() for part in line.split(LISTING_DELIMITER)]
    if len(parts) < 4:
        raise ListingParseError(
            f"Expected 4 '{LISTING_DELIMITER}'-separated fields, got {len(parts)}: {line!r}"
        )
    runtime_id, name, image, *status_parts = parts
    if not runtime_id or not name:
        raise ListingParseError(f"Listing line is missing an id or name: {line!r}")
    status = LISTING_DELIMITER.join(status_parts).strip()
    return Instance(runtime_id=runtime_id, name=name, image=image, status_text=status)


def parse_listing(text: str) -> list[Instance]:
    """Parse the full listing, skipping malformed lines."""
    instances: list[Instance] = []
    for line in text.splitlines():
        if not line.strip():
            continue
        try:
            instances.append(parse_listing_line(line))
        except ListingParseError as exc:
            LOGGER.warning("Skipping malformed container listing line: %s", exc)
    return instances


@dataclass(frozen=True, slots=True)
class ImageRecord:
    """An image reported by ``docker images``."""

    image_id: str
    repository: str


class DockerProvider:
    """Query and drive containers through the Docker CLI."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        docker_bin: str = "docker",
        image_namespace: str = "mcp/",
        instance_suffix: str = "-mcp-server",
    ) -> None:
        """Initialise the provider with a command *runner*."""
        self.runner = runner
        self.docker_bin = docker_bin
        self.image_namespace = image_namespace
        self.instance_suffix = instance_suffix

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def list_instances(self, *, include_foreign: bool = False) -> list[Instance]:
        """Return every container known to the runtime that belongs to mcpctl."""
        try:
            result = self._docker(["ps", "-a", "--format", LISTING_FORMAT])
        except LaunchError as exc:
            raise RuntimeUnavailableError(f"Failed to execute docker command: {exc}") from exc
        if not result.ok:
            raise RuntimeUnavailableError(f"Failed to list containers: {result.summary()}")
        if result.stderr.strip():
            LOGGER.warning("docker ps stderr: %s", result.stderr.strip())

        instances = parse_listing(result.stdout)
        if include_foreign:
            return instances
        return [instance for instance in instances if instance.is_mcp(self.image_namespace)]

    def list_images(self) -> list[ImageRecord]:
        """Return the images known to the runtime."""
        result = self._docker(["images", "--format", IMAGES_FORMAT])
        if not result.ok:
            raise RuntimeUnavailableError(f"Failed to list images: {result.summary()}")
        records: list[ImageRecord] = []
        for line in result.stdout.splitlines():
            fields = line.split(None, 1)
            if len(fields) != 2:
                continue
            records.append(ImageRecord(image_id=fields[0], repository=fields[1].strip()))
        return records

    def find_images(self, pattern: str) -> list[ImageRecord]:
        """Return images whose repository contains *pattern* (case-insensitive)."""
        needle = pattern.strip().lower()
        if not needle:
            return []
        return [record for record in self.list_images() if needle in record.repository.lower()]

    def image_pattern(self, instance_name: str) -> str:
        """Return the image repository pattern for *instance_name*."""
        base = instance_name.strip()
        if self.instance_suffix and base.lower().endswith(self.instance_suffix.lower()):
            base = base[: -len(self.instance_suffix)]
        return f"{self.image_namespace}{base.lower()}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self, identifier: str) -> CommandResult:
        """Start the container *identifier*."""
        return self._docker(["start", validate_identifier(identifier, label="id")])

    def stop(self, identifier: str) -> CommandResult:
        """Stop the container *identifier*."""
        return self._docker(["stop", validate_identifier(identifier, label="id")])

    def restart(self, identifier: str) -> CommandResult:
        """Restart the container *identifier*."""
        return self._docker(["restart", validate_identifier(identifier, label="id")])

    def remove(self, name: str) -> CommandResult:
        """Remove the (stopped) container *name*."""
        return self._docker(["rm", validate_identifier(name, label="name")])

    def remove_image(self, image_id: str, *, force: bool = True) -> CommandResult:
        """Remove the image *image_id*."""
        args = ["rmi"]
        if force:
            args.append("-f")
        args.append(validate_identifier(image_id, label="image id"))
        return self._docker(args)

    def logs(self, identifier: str, *, tail: int = 500) -> CommandResult:
        """Return the last *tail* log lines for *identifier*."""
        if tail <= 0:
            raise ValueError("tail must be greater than zero.")
        return self._docker(
            ["logs", "--tail", str(tail), validate_identifier(identifier, label="id")]
        )

    # ------------------------------------------------------------------
    def _docker(self, args: Sequence[str]) -> CommandResult:
        return self.runner.run(CommandSpec(argv=(self.docker_bin, *args)))


__all__ = [
    "DockerProvider",
    "ImageRecord",
    "Instance",
    "InvalidIdentifierError",
    "ListingParseError",
    "RuntimeUnavailableError",
    "parse_listing",
    "parse_listing_line",
    "status_indicates_running",
    "validate_identifier",
]
