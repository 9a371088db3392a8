"""Applying and deleting sets of objects.

The ResourceManager applies objects in order and stops at the first
failure. Objects applied before the failure are left in place and are
recorded in the change set passed in by the caller, so the caller can
keep track of them in the inventory.
"""

from dataclasses import dataclass, field
import logging
from typing import Any

from flux_resourceset.exceptions import (
    ApplyError,
    FluxException,
    InputException,
    ObjectNotFoundError,
    PruneError,
)
from flux_resourceset.manifest import (
    NamedResource,
    ResourceRef,
    DISABLED_VALUE,
    PRUNE_ANNOTATION,
    SSA_ANNOTATION,
    SSA_IF_NOT_PRESENT,
    SSA_IGNORE,
)

from .cluster import ApplyAction, Cluster

__all__ = [
    "ChangeSet",
    "ChangeSetEntry",
    "ResourceManager",
]

_LOGGER = logging.getLogger(__name__)

# Actions that leave the object owned by the applier
_OWNED_ACTIONS = (ApplyAction.CREATED, ApplyAction.CONFIGURED, ApplyAction.UNCHANGED)


@dataclass
class ChangeSetEntry:
    """The result of applying or deleting one object."""

    resource_id: NamedResource
    version: str
    action: ApplyAction

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(id=self.resource_id.object_id, version=self.version)

    def __str__(self) -> str:
        return f"{self.resource_id} {self.action.value}"


@dataclass
class ChangeSet:
    """The ordered results of an apply or delete operation."""

    entries: list[ChangeSetEntry] = field(default_factory=list)

    def add(self, entry: ChangeSetEntry) -> None:
        self.entries.append(entry)

    @property
    def owned(self) -> list[ResourceRef]:
        """Inventory entries for objects that were created, configured or unchanged."""
        return [entry.ref for entry in self.entries if entry.action in _OWNED_ACTIONS]

    @property
    def changes(self) -> list[ChangeSetEntry]:
        """Entries that modified the cluster."""
        return [
            entry
            for entry in self.entries
            if entry.action
            in (ApplyAction.CREATED, ApplyAction.CONFIGURED, ApplyAction.DELETED)
        ]

    def __str__(self) -> str:
        return "\n".join(str(entry) for entry in self.changes)


def _annotations(obj: dict[str, Any]) -> dict[str, str]:
    return (obj.get("metadata") or {}).get("annotations") or {}


def _prune_disabled(obj: dict[str, Any]) -> bool:
    return _annotations(obj).get(PRUNE_ANNOTATION, "").lower() == DISABLED_VALUE


class ResourceManager:
    """Applies and deletes sets of objects in a cluster."""

    def __init__(self, cluster: Cluster) -> None:
        """Initialize ResourceManager."""
        self._cluster = cluster

    async def apply_all(
        self, objects: list[dict[str, Any]], change_set: ChangeSet | None = None
    ) -> ChangeSet:
        """Apply the objects in order, stopping at the first failure.

        The `fluxcd.controlplane.io/ssa` annotation controls how each object
        is applied: `IfNotPresent` only creates missing objects and `Ignore`
        never writes the object but keeps an existing one in the inventory.

        Raises:
            ApplyError: For the first object that fails to apply.
        """
        if change_set is None:
            change_set = ChangeSet()
        for obj in objects:
            resource_id = NamedResource.from_doc(obj)
            policy = _annotations(obj).get(SSA_ANNOTATION)
            try:
                if policy == SSA_IGNORE:
                    action = (
                        ApplyAction.UNCHANGED
                        if await self._cluster.get(resource_id) is not None
                        else ApplyAction.SKIPPED
                    )
                elif (
                    policy == SSA_IF_NOT_PRESENT
                    and await self._cluster.get(resource_id) is not None
                ):
                    action = ApplyAction.UNCHANGED
                else:
                    action = await self._cluster.apply(obj)
            except FluxException as err:
                _LOGGER.info("Failed to apply %s: %s", resource_id, err)
                raise ApplyError(str(resource_id), str(err)) from err
            _LOGGER.debug("Applied %s: %s", resource_id, action.value)
            change_set.add(ChangeSetEntry(resource_id, obj["apiVersion"], action))
        return change_set

    async def delete_all(
        self, refs: list[ResourceRef], change_set: ChangeSet | None = None
    ) -> ChangeSet:
        """Delete the objects in the inventory entries.

        Objects that no longer exist are skipped, as are objects annotated
        with `fluxcd.controlplane.io/prune: disabled`. Deletion continues
        past failures and all failures are reported together.

        Raises:
            PruneError: If any object could not be deleted.
        """
        if change_set is None:
            change_set = ChangeSet()
        errors: list[str] = []
        for ref in refs:
            try:
                resource_id = ref.resource_id
            except InputException as err:
                errors.append(str(err))
                continue
            try:
                if (obj := await self._cluster.get(resource_id)) is None:
                    change_set.add(
                        ChangeSetEntry(resource_id, ref.version, ApplyAction.SKIPPED)
                    )
                    continue
                if _prune_disabled(obj):
                    _LOGGER.debug("Pruning disabled for %s", resource_id)
                    change_set.add(
                        ChangeSetEntry(resource_id, ref.version, ApplyAction.SKIPPED)
                    )
                    continue
                await self._cluster.delete(resource_id)
            except ObjectNotFoundError:
                change_set.add(
                    ChangeSetEntry(resource_id, ref.version, ApplyAction.SKIPPED)
                )
                continue
            except FluxException as err:
                _LOGGER.info("Failed to delete %s: %s", resource_id, err)
                errors.append(f"{resource_id} delete failed: {err}")
                continue
            change_set.add(
                ChangeSetEntry(resource_id, ref.version, ApplyAction.DELETED)
            )
        if errors:
            raise PruneError("\n".join(errors))
        return change_set
