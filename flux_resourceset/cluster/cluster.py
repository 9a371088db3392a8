"""Cluster module for reading and writing kubernetes objects."""

from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import Enum
from typing import Any

from flux_resourceset.manifest import NamedResource


class ClusterEvent(str, Enum):
    """Enum for cluster events."""

    OBJECT_CHANGED = "object_changed"
    OBJECT_DELETED = "object_deleted"


class ApplyAction(str, Enum):
    """The outcome of applying or deleting a single object."""

    CREATED = "created"
    CONFIGURED = "configured"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
    SKIPPED = "skipped"


class Cluster(ABC):
    """Abstract base class for access to the objects of a cluster.

    Objects are plain kubernetes documents. Writes that carry a
    `metadata.resourceVersion` are rejected when the stored object has
    changed since that version was read.
    """

    @property
    @abstractmethod
    def username(self) -> str | None:
        """The identity used for requests, None for the controller itself."""

    @abstractmethod
    async def get(self, resource_id: NamedResource) -> dict[str, Any] | None:
        """Return a copy of the object, or None if it does not exist."""

    @abstractmethod
    async def list(
        self, kind: str, group: str = "", namespace: str | None = None
    ) -> list[dict[str, Any]]:
        """List copies of all objects of a kind, optionally in one namespace."""

    @abstractmethod
    async def create(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Create a new object and return the stored copy.

        Raises:
            ConflictError: If the object already exists.
        """

    @abstractmethod
    async def apply(self, obj: dict[str, Any]) -> ApplyAction:
        """Create the object or replace its desired state (upsert).

        The status of an existing object is preserved.

        Raises:
            ConflictError: If a resourceVersion is set and is stale.
        """

    @abstractmethod
    async def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the metadata and desired state of an existing object.

        Removing the last finalizer from an object that is being deleted
        removes the object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the resourceVersion is stale.
        """

    @abstractmethod
    async def update_status(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace the status of an existing object.

        Raises:
            ObjectNotFoundError: If the object does not exist.
            ConflictError: If the resourceVersion is stale.
        """

    @abstractmethod
    async def delete(self, resource_id: NamedResource) -> None:
        """Delete an object, or mark it for deletion if it has finalizers.

        Raises:
            ObjectNotFoundError: If the object does not exist.
        """

    @abstractmethod
    async def impersonate(self, service_account: NamedResource) -> "Cluster":
        """Return a view of the cluster that acts as the service account.

        Raises:
            ImpersonationError: If the service account can't be used.
        """

    @abstractmethod
    def add_listener(
        self,
        event: ClusterEvent,
        callback: Callable[[NamedResource, dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Register a callback for object changes.

        Returns a callable that can be called to remove the listener.
        """
