"""Manager that drives ResourceSet reconciliations.

The manager watches the cluster for ResourceSet changes and runs the
controller from a fixed pool of workers. A ResourceSet is never reconciled
by two workers at once: a change that arrives while it is being reconciled
is held back and queued again once the running reconciliation is done.
"""

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Callable

from flux_resourceset.cluster import Cluster, ClusterEvent
from flux_resourceset.exceptions import FluxException
from flux_resourceset.manifest import (
    RESOURCESET_DOMAIN,
    RESOURCESET_KIND,
    NamedResource,
)

from .controller import ResourceSetController, ReconcileResult

__all__ = [
    "Manager",
    "ManagerConfig",
]

_LOGGER = logging.getLogger(__name__)


@dataclass
class ManagerConfig:
    """Configuration for the Manager."""

    max_concurrent_reconciles: int = 4
    """Number of ResourceSets reconciled in parallel."""

    backoff_base: float = 1.0
    """Seconds to wait before retrying the first failure."""

    backoff_max: float = 300.0
    """Upper bound in seconds on the retry delay."""


def _is_resource_set(resource_id: NamedResource) -> bool:
    return (
        resource_id.kind == RESOURCESET_KIND
        and resource_id.group == RESOURCESET_DOMAIN
    )


def _watched_state(obj: dict[str, Any]) -> tuple[Any, ...]:
    """Return the fields that trigger a reconciliation when changed.

    Status updates are excluded so that the controller writing the status
    does not reconcile the ResourceSet again.
    """
    metadata = obj.get("metadata") or {}
    annotations = metadata.get("annotations") or {}
    return (
        metadata.get("generation"),
        metadata.get("deletionTimestamp"),
        tuple(sorted(annotations.items())),
    )


class Manager:
    """Runs the ResourceSetController for every ResourceSet in the cluster."""

    def __init__(
        self,
        cluster: Cluster,
        controller: ResourceSetController,
        config: ManagerConfig | None = None,
    ) -> None:
        """Initialize Manager."""
        self._cluster = cluster
        self._controller = controller
        self._config = config or ManagerConfig()
        self._queue: asyncio.Queue[NamedResource] = asyncio.Queue()
        self._queued: set[NamedResource] = set()
        self._processing: set[NamedResource] = set()
        self._dirty: set[NamedResource] = set()
        self._timers: dict[NamedResource, asyncio.TimerHandle] = {}
        self._failures: dict[NamedResource, int] = {}
        self._seen: dict[NamedResource, tuple[Any, ...]] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._remove_listeners: list[Callable[[], None]] = []

    async def start(self) -> None:
        """Start the workers and queue all existing ResourceSets."""
        _LOGGER.info(
            "Starting Manager with %d workers", self._config.max_concurrent_reconciles
        )
        self._remove_listeners.extend(
            [
                self._cluster.add_listener(
                    ClusterEvent.OBJECT_CHANGED, self._on_object_changed
                ),
                self._cluster.add_listener(
                    ClusterEvent.OBJECT_DELETED, self._on_object_deleted
                ),
            ]
        )
        for obj in await self._cluster.list(RESOURCESET_KIND, RESOURCESET_DOMAIN):
            self._on_object_changed(NamedResource.from_doc(obj), obj)
        for i in range(self._config.max_concurrent_reconciles):
            self._workers.append(
                asyncio.create_task(self._worker(), name=f"resourceset-worker-{i}")
            )

    async def close(self) -> None:
        """Stop watching the cluster and cancel all workers."""
        _LOGGER.info("Closing Manager, cancelling workers")
        for remove in self._remove_listeners:
            remove()
        self._remove_listeners.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._workers:
            task.cancel()
        try:
            await asyncio.gather(*self._workers, return_exceptions=True)
        except asyncio.CancelledError:
            pass
        self._workers.clear()

    def enqueue(self, resource_id: NamedResource) -> None:
        """Queue a ResourceSet for reconciliation.

        A ResourceSet that is already queued is not queued twice.
        """
        if resource_id in self._processing:
            self._dirty.add(resource_id)
            return
        if resource_id in self._queued:
            return
        self._queued.add(resource_id)
        self._queue.put_nowait(resource_id)

    def enqueue_after(self, resource_id: NamedResource, delay: float) -> None:
        """Queue a ResourceSet for reconciliation after a delay in seconds."""
        if (timer := self._timers.pop(resource_id, None)) is not None:
            timer.cancel()
        self._timers[resource_id] = asyncio.get_running_loop().call_later(
            delay, self._on_timer, resource_id
        )

    async def wait_idle(self) -> None:
        """Wait until every queued reconciliation has completed.

        Reconciliations scheduled for later are not waited for.
        """
        await self._queue.join()

    def _on_timer(self, resource_id: NamedResource) -> None:
        self._timers.pop(resource_id, None)
        self.enqueue(resource_id)

    def _on_object_changed(
        self, resource_id: NamedResource, obj: dict[str, Any]
    ) -> None:
        if not _is_resource_set(resource_id):
            return
        state = _watched_state(obj)
        if self._seen.get(resource_id) == state:
            return
        self._seen[resource_id] = state
        self.enqueue(resource_id)

    def _on_object_deleted(
        self, resource_id: NamedResource, obj: dict[str, Any]
    ) -> None:
        if not _is_resource_set(resource_id):
            return
        _LOGGER.debug("ResourceSet %s deleted", resource_id)
        self._seen.pop(resource_id, None)
        self._failures.pop(resource_id, None)
        if (timer := self._timers.pop(resource_id, None)) is not None:
            timer.cancel()

    async def _worker(self) -> None:
        while True:
            resource_id = await self._queue.get()
            self._queued.discard(resource_id)
            self._processing.add(resource_id)
            try:
                await self._process(resource_id)
            finally:
                self._processing.discard(resource_id)
                if resource_id in self._dirty:
                    self._dirty.discard(resource_id)
                    self.enqueue(resource_id)
                self._queue.task_done()

    async def _process(self, resource_id: NamedResource) -> None:
        try:
            result = await self._controller.reconcile(resource_id)
        except asyncio.CancelledError:
            raise
        except Exception as err:
            failures = self._failures.get(resource_id, 0) + 1
            self._failures[resource_id] = failures
            delay = min(
                self._config.backoff_base * 2 ** (failures - 1),
                self._config.backoff_max,
            )
            _LOGGER.error(
                "Reconciliation of ResourceSet %s failed, retrying in %.1fs: %s",
                resource_id.namespaced_name,
                delay,
                err,
                exc_info=not isinstance(err, FluxException),
            )
            self.enqueue_after(resource_id, delay)
            return
        self._failures.pop(resource_id, None)
        self._schedule(resource_id, result)

    def _schedule(self, resource_id: NamedResource, result: ReconcileResult) -> None:
        if result.requeue:
            self.enqueue(resource_id)
        elif result.requeue_after:
            _LOGGER.debug(
                "ResourceSet %s requeued after %.1fs",
                resource_id.namespaced_name,
                result.requeue_after,
            )
            self.enqueue_after(resource_id, result.requeue_after)
