"""Join catalog entries with runtime instances."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import cast

from .catalog import CatalogEntry
from .providers.docker import Instance

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ServerView:
    """A catalog entry together with its container, if any.

    Views built from an orphan container (no catalog entry) are *unmanaged*.
    """

    entry: CatalogEntry | None
    instance: Instance | None = None
    warnings: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        """Reject views with neither a catalog entry nor a container."""
        if self.entry is None and self.instance is None:
            raise ValueError("A server view needs a catalog entry or a container.")

    @property
    def is_deployed(self) -> bool:
        """Return ``True`` when a matching container exists, running or not."""
        return self.instance is not None

    @property
    def is_running(self) -> bool:
        """Return ``True`` when the matching container is up."""
        return self.instance is not None and self.instance.is_running

    @property
    def managed(self) -> bool:
        """Return ``True`` when the view is backed by a catalog entry."""
        return self.entry is not None

    @property
    def instance_name(self) -> str:
        """Return the container name this view correlates on."""
        if self.entry is not None:
            return self.entry.instance_name
        return cast(Instance, self.instance).name

    @property
    def name(self) -> str:
        """Return the display name."""
        if self.entry is not None:
            return self.entry.name
        return cast(Instance, self.instance).name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {}
        if self.entry is not None:
            payload.update(self.entry.to_dict())
        else:
            payload.update({"id": self.instance_name.lower(), "name": self.name})
            payload["containerName"] = self.instance_name
        payload["managed"] = self.managed
        payload["isDeployed"] = self.is_deployed
        payload["isRunning"] = self.is_running
        if self.instance is not None:
            payload["containerId"] = self.instance.runtime_id
            payload["image"] = self.instance.image
            payload["status"] = self.instance.status_text
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        return payload


def reconcile(
    entries: Sequence[CatalogEntry],
    instances: Sequence[Instance],
    *,
    include_unmanaged: bool = False,
) -> list[ServerView]:
    """Return one view per catalog entry, in entry order.

    Containers are matched on ``entry.instance_name`` case-insensitively. When
    several containers share a name the first one wins and the view carries a
    warning. With *include_unmanaged*, containers that match no entry are
    appended as unmanaged views sorted by name.
    """
    by_name: dict[str, list[Instance]] = {}
    for instance in instances:
        by_name.setdefault(instance.name.lower(), []).append(instance)

    views: list[ServerView] = []
    claimed: set[str] = set()
    for entry in entries:
        key = entry.instance_name.lower()
        matches = by_name.get(key, [])
        warnings: tuple[str, ...] = ()
        if len(matches) > 1:
            ids = ", ".join(match.runtime_id for match in matches)
            message = (
                f"{len(matches)} containers are named '{entry.instance_name}' ({ids}); "
                f"using {matches[0].runtime_id}."
            )
            LOGGER.warning(message)
            warnings = (message,)
        views.append(
            ServerView(entry=entry, instance=matches[0] if matches else None, warnings=warnings)
        )
        claimed.add(key)

    if include_unmanaged:
        orphans = sorted(
            (instance for instance in instances if instance.name.lower() not in claimed),
            key=lambda item: (item.name.lower(), item.runtime_id),
        )
        views.extend(ServerView(entry=None, instance=orphan) for orphan in orphans)

    return views


def find_view(views: Iterable[ServerView], instance_name: str) -> ServerView | None:
    """Return the view whose container name matches *instance_name*."""
    needle = instance_name.strip().lower()
    for view in views:
        if view.instance_name.lower() == needle:
            return view
        if view.instance is not None and needle == view.instance.runtime_id.lower():
            return view
    return None


__all__ = ["ServerView", "find_view", "reconcile"]
