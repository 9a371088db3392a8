"""Module for an in memory cluster.

The in memory cluster behaves like an API server for the features the
controller depends on: resource versions with conflict detection,
generations, finalizers and deletion timestamps, Secret `stringData`
folding, and service account impersonation.
"""

import asyncio
import base64
import copy
import datetime
import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from typing import Any, DefaultDict

from flux_resourceset.exceptions import (
    ConflictError,
    ImpersonationError,
    ObjectNotFoundError,
)
from flux_resourceset.manifest import (
    NamedResource,
    SECRET_KIND,
    SERVICE_ACCOUNT_KIND,
)

from .cluster import ApplyAction, Cluster, ClusterEvent

_LOGGER = logging.getLogger(__name__)

# Metadata fields owned by the server, never taken from a write request
SYSTEM_METADATA = (
    "resourceVersion",
    "uid",
    "creationTimestamp",
    "generation",
    "deletionTimestamp",
)


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _fold_string_data(obj: dict[str, Any]) -> None:
    """Move Secret stringData into the base64 encoded data map."""
    if obj.get("kind") != SECRET_KIND or obj.get("apiVersion") != "v1":
        return
    if not (string_data := obj.pop("stringData", None)):
        return
    data = obj.get("data") or {}
    for key, value in string_data.items():
        data[key] = base64.b64encode(str(value).encode()).decode()
    obj["data"] = data


def _desired_state(obj: dict[str, Any]) -> dict[str, Any]:
    """Return the fields that contribute to the object generation."""
    return {k: v for k, v in obj.items() if k not in ("metadata", "status")}


class InMemoryCluster(Cluster):
    """In-memory implementation of the Cluster interface.

    Stores objects keyed by NamedResource and supports event listeners
    for object changes and deletions.
    """

    def __init__(self) -> None:
        """Initialize the InMemoryCluster."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._resource_version = 0
        self._listeners: DefaultDict[ClusterEvent, list[Callable[..., None]]] = (
            defaultdict(list)
        )

    @property
    def username(self) -> str | None:
        return None

    def add_object(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Add a new object to the cluster and return the stored copy."""
        resource_id = NamedResource.from_doc(obj)
        if resource_id in self._objects:
            raise ConflictError(f"{resource_id} already exists")
        new_obj = copy.deepcopy(obj)
        _fold_string_data(new_obj)
        metadata = new_obj["metadata"]
        for key in SYSTEM_METADATA:
            metadata.pop(key, None)
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = _now()
        metadata["generation"] = 1
        _LOGGER.debug("Creating object %s", resource_id)
        return self._store(resource_id, new_obj)

    def get_object(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of the object without yielding to the event loop."""
        if (obj := self._objects.get(resource_id)) is None:
            return None
        return copy.deepcopy(obj)

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        await asyncio.sleep(0)
        return self.get_object(resource_id)

    async def list(
        self, kind: str, group: str = "", namespace: str | None = None
    ) -> list[dict[str, Any]]:
        await asyncio.sleep(0)
        return [
            copy.deepcopy(obj)
            for resource_id, obj in self._objects.items()
            if resource_id.kind == kind
            and resource_id.group == group
            and (namespace is None or resource_id.namespace == namespace)
        ]

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        return self.add_object(obj)

    async def apply(self, obj: dict[str, Any]) -> ApplyAction:
        await asyncio.sleep(0)
        resource_id = NamedResource.from_doc(obj)
        if (existing := self._objects.get(resource_id)) is None:
            desired = copy.deepcopy(obj)
            desired.pop("status", None)
            self.add_object(desired)
            return ApplyAction.CREATED
        self._check_version(resource_id, obj, existing)
        merged = copy.deepcopy(obj)
        _fold_string_data(merged)
        merged.pop("status", None)
        metadata = merged.setdefault("metadata", {})
        existing_metadata = existing["metadata"]
        for key in SYSTEM_METADATA:
            if key in existing_metadata:
                metadata[key] = existing_metadata[key]
            else:
                metadata.pop(key, None)
        if "finalizers" not in metadata and "finalizers" in existing_metadata:
            metadata["finalizers"] = existing_metadata["finalizers"]
        if "status" in existing:
            merged["status"] = copy.deepcopy(existing["status"])
        if merged == existing:
            return ApplyAction.UNCHANGED
        if _desired_state(merged) != _desired_state(existing):
            metadata["generation"] = existing_metadata.get("generation", 0) + 1
        _LOGGER.debug("Configuring object %s", resource_id)
        self._store(resource_id, merged)
        return ApplyAction.CONFIGURED

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        resource_id = NamedResource.from_doc(obj)
        existing = self._require(resource_id)
        self._check_version(resource_id, obj, existing)
        updated = copy.deepcopy(obj)
        _fold_string_data(updated)
        metadata = updated["metadata"]
        existing_metadata = existing["metadata"]
        for key in SYSTEM_METADATA:
            if key in existing_metadata:
                metadata[key] = existing_metadata[key]
            else:
                metadata.pop(key, None)
        updated.pop("status", None)
        if "status" in existing:
            updated["status"] = copy.deepcopy(existing["status"])
        if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
            self._remove(resource_id)
            return updated
        if updated == existing:
            return copy.deepcopy(existing)
        if _desired_state(updated) != _desired_state(existing):
            metadata["generation"] = existing_metadata.get("generation", 0) + 1
        return self._store(resource_id, updated)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        await asyncio.sleep(0)
        resource_id = NamedResource.from_doc(obj)
        existing = self._require(resource_id)
        self._check_version(resource_id, obj, existing)
        updated = copy.deepcopy(existing)
        if "status" in obj:
            updated["status"] = copy.deepcopy(obj["status"])
        else:
            updated.pop("status", None)
        if updated == existing:
            return copy.deepcopy(existing)
        return self._store(resource_id, updated)

    async def delete(self, resource_id: NamedResource) -> None:
        await asyncio.sleep(0)
        existing = self._require(resource_id)
        metadata = existing["metadata"]
        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                _LOGGER.debug("Marking object %s for deletion", resource_id)
                updated = copy.deepcopy(existing)
                updated["metadata"]["deletionTimestamp"] = _now()
                self._store(resource_id, updated)
            return
        self._remove(resource_id)

    async def impersonate(self, service_account: NamedResource) -> Cluster:
        await asyncio.sleep(0)
        account_id = NamedResource(
            kind=SERVICE_ACCOUNT_KIND,
            namespace=service_account.namespace,
            name=service_account.name,
        )
        if account_id not in self._objects:
            raise ImpersonationError(
                f"failed to impersonate service account "
                f"'{account_id.namespaced_name}': not found"
            )
        return ImpersonatedCluster(
            self,
            f"system:serviceaccount:{account_id.namespace}:{account_id.name}",
        )

    def add_listener(
        self,
        event: ClusterEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a callback for object changes."""

        def remove() -> None:
            if callback in self._listeners[event]:
                self._listeners[event].remove(callback)

        self._listeners[event].append(callback)
        return remove

    def _require(self, resource_id: NamedResource) -> dict[str, Any]:
        if (existing := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        return existing

    def _check_version(
        self,
        resource_id: NamedResource,
        obj: dict[str, Any],
        existing: dict[str, Any],
    ) -> None:
        requested = (obj.get("metadata") or {}).get("resourceVersion")
        current = existing["metadata"].get("resourceVersion")
        if requested and requested != current:
            raise ConflictError(
                f"Operation cannot be fulfilled on {resource_id}: the object has "
                "been modified; please apply your changes to the latest version "
                "and try again"
            )

    def _store(self, resource_id: NamedResource, obj: dict[str, Any]) -> dict[str, Any]:
        self._resource_version += 1
        obj["metadata"]["resourceVersion"] = str(self._resource_version)
        self._objects[resource_id] = obj
        self._fire_event(ClusterEvent.OBJECT_CHANGED, resource_id, obj)
        return copy.deepcopy(obj)

    def _remove(self, resource_id: NamedResource) -> None:
        _LOGGER.debug("Removing object %s", resource_id)
        obj = self._objects.pop(resource_id)
        self._fire_event(ClusterEvent.OBJECT_DELETED, resource_id, obj)

    def _fire_event(
        self, event: ClusterEvent, resource_id: NamedResource, obj: dict[str, Any]
    ) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(resource_id, copy.deepcopy(obj))
            except Exception as err:
                _LOGGER.error(
                    "Listener for %s failed on %s: %s", event, resource_id, err
                )


class ImpersonatedCluster(Cluster):
    """A view of an InMemoryCluster acting as another user."""

    def __init__(self, cluster: InMemoryCluster, username: str) -> None:
        """Initialize ImpersonatedCluster."""
        self._cluster = cluster
        self._username = username

    @property
    def username(self) -> str | None:
        return self._username

    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        return await self._cluster.get(resource_id)

    async def list(
        self, kind: str, group: str = "", namespace: str | None = None
    ) -> list[dict[str, Any]]:
        return await self._cluster.list(kind, group, namespace)

    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        return await self._cluster.create(obj)

    async def apply(self, obj: dict[str, Any]) -> ApplyAction:
        return await self._cluster.apply(obj)

    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        return await self._cluster.update(obj)

    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        return await self._cluster.update_status(obj)

    async def delete(self, resource_id: NamedResource) -> None:
        await self._cluster.delete(resource_id)

    async def impersonate(self, service_account: NamedResource) -> Cluster:
        return await self._cluster.impersonate(service_account)

    def add_listener(
        self,
        event: ClusterEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
    ) -> Callable[[], None]:
        return self._cluster.add_listener(event, callback)
