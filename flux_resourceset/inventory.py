"""Module for tracking the objects owned by a ResourceSet.

The inventory is stored in the ResourceSet status and is the only record of
which objects a ResourceSet owns. It is never rebuilt by listing the
cluster, so objects are pruned only if they were applied by this
ResourceSet.
"""

from collections.abc import Iterable
import logging
from typing import Any

from .manifest import NamedResource, ResourceInventory, ResourceRef

__all__ = [
    "Inventory",
    "object_ref",
    "diff",
]

_LOGGER = logging.getLogger(__name__)


def object_ref(obj: dict[str, Any]) -> ResourceRef:
    """Return the inventory entry for a kubernetes object."""
    resource_id = NamedResource.from_doc(obj)
    return ResourceRef(id=resource_id.object_id, version=obj["apiVersion"])


class Inventory:
    """An ordered set of inventory entries keyed by object identity."""

    def __init__(self, entries: Iterable[ResourceRef] = ()) -> None:
        """Initialize Inventory."""
        self._entries: dict[str, ResourceRef] = {}
        for entry in entries:
            self.add(entry)

    @classmethod
    def from_status(cls, inventory: ResourceInventory | None) -> "Inventory":
        if inventory is None:
            return cls()
        return cls(inventory.entries)

    def add(self, entry: ResourceRef) -> None:
        """Add an entry, updating the version of an existing entry in place."""
        self._entries[entry.id] = ResourceRef(id=entry.id, version=entry.version)

    def remove(self, entry_id: str) -> None:
        self._entries.pop(entry_id, None)

    def __contains__(self, entry_id: object) -> bool:
        return entry_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[ResourceRef]:
        return list(self._entries.values())

    @property
    def ids(self) -> set[str]:
        return set(self._entries)

    def to_status(self) -> ResourceInventory:
        return ResourceInventory(entries=self.entries)


def diff(
    previous: Iterable[ResourceRef], desired: list[dict[str, Any]]
) -> tuple[list[dict[str, Any]], list[ResourceRef]]:
    """Return the objects to apply and the stale entries to prune.

    All desired objects are applied since apply is an upsert. Entries of
    the previous inventory are stale when no desired object has the same
    identity; the apiVersion is not part of the identity.
    """
    desired_ids = {object_ref(obj).id for obj in desired}
    to_prune = [entry for entry in previous if entry.id not in desired_ids]
    _LOGGER.debug(
        "Inventory diff: %d objects to apply, %d to prune", len(desired), len(to_prune)
    )
    return list(desired), to_prune
