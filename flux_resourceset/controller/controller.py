"""
ResourceSet Controller implementation.

This controller reconciles ResourceSet objects: it checks the dependencies,
renders the resource templates for every set of inputs, copies data from
the copyFrom sources, applies the rendered objects and prunes the objects
that are no longer rendered. The objects a ResourceSet owns are tracked in
the inventory stored in its status.

Key Concepts:
    - Finalizer: Added before any object is applied so the owned objects can
      be pruned when the ResourceSet is deleted.
    - Inventory: The identities of the owned objects, carried forward in
      the status across reconciliations.
    - ReconcileResult: Tells the calling Manager when to reconcile again.
      Failures that should be retried with backoff are raised instead.

Dependencies:
    - flux_resourceset.cluster.Cluster: For reading and writing objects.
    - flux_resourceset.dependency.DependencyGate: For readiness checks.
    - flux_resourceset.template.build_resources: For rendering the templates.
"""

import asyncio
import copy
import logging
import time
from dataclasses import dataclass
from typing import Any

from flux_resourceset.cluster import (
    ApplyAction,
    ChangeSet,
    Cluster,
    ResourceManager,
)
from flux_resourceset.copy_from import CopyFromResolver
from flux_resourceset.dependency import DependencyGate
from flux_resourceset.exceptions import (
    ApplyError,
    CopyFromError,
    ImpersonationError,
    InputException,
    InvalidExpressionError,
    PruneError,
    ReconcileError,
    TemplateException,
)
from flux_resourceset.expression import ExpressionEvaluator
from flux_resourceset.inventory import Inventory, diff
from flux_resourceset.manifest import (
    BUILD_FAILED_REASON,
    CONDITION_FALSE,
    CONDITION_TRUE,
    CONDITION_UNKNOWN,
    DEPENDENCY_NOT_READY_REASON,
    FINALIZER,
    INVALID_EXPRESSION_REASON,
    OWNER_NAME_LABEL,
    OWNER_NAMESPACE_LABEL,
    PROGRESSING_REASON,
    READY_CONDITION,
    RECONCILIATION_FAILED_REASON,
    RECONCILIATION_SUCCEEDED_REASON,
    SERVICE_ACCOUNT_KIND,
    NamedResource,
    ResourceSet,
)
from flux_resourceset.template import build_resources, checksum

_LOGGER = logging.getLogger(__name__)

DEPENDENCY_REQUEUE_INTERVAL = 5.0
RECONCILE_TIMEOUT = 300.0


@dataclass
class ResourceSetControllerConfig:
    """Configuration for the ResourceSetController."""

    dependency_requeue_interval: float = DEPENDENCY_REQUEUE_INTERVAL
    """Seconds to wait before checking dependencies that are not ready."""

    reconcile_interval: float | None = None
    """Seconds between periodic reconciliations, unless set by annotation."""

    reconcile_timeout: float = RECONCILE_TIMEOUT
    """Deadline in seconds for a single reconciliation, unless set by annotation."""


@dataclass(frozen=True)
class ReconcileResult:
    """When the ResourceSet should be reconciled again."""

    requeue: bool = False
    """Reconcile again immediately."""

    requeue_after: float = 0.0
    """Reconcile again after this many seconds."""

    @property
    def is_zero(self) -> bool:
        """Return True when no reconciliation is scheduled."""
        return not self.requeue and not self.requeue_after


def _set_owner_labels(obj: dict[str, Any], resource_set: ResourceSet) -> None:
    metadata = obj.setdefault("metadata", {})
    labels = metadata.get("labels") or {}
    labels[OWNER_NAME_LABEL] = resource_set.name
    labels[OWNER_NAMESPACE_LABEL] = resource_set.namespace
    metadata["labels"] = labels


class ResourceSetController:
    """
    Controller for reconciling ResourceSet resources.

    Each call to `reconcile` is a single pass over one ResourceSet. The
    caller must not reconcile the same ResourceSet concurrently.
    """

    def __init__(
        self,
        cluster: Cluster,
        config: ResourceSetControllerConfig | None = None,
        evaluator: ExpressionEvaluator | None = None,
    ) -> None:
        """
        Initialize the controller with a cluster.

        Args:
            cluster: The cluster holding the ResourceSets and their objects
            config: The configuration for the controller
            evaluator: Evaluates dependency readiness expressions, CEL by default
        """
        self._cluster = cluster
        self._config = config or ResourceSetControllerConfig()
        self._gate = DependencyGate(cluster, evaluator)

    async def reconcile(self, resource_id: NamedResource) -> ReconcileResult:
        """
        Reconcile a ResourceSet.

        This method performs the following steps:
        1. Adds the finalizer and asks to be called again.
        2. Prunes the inventory and removes the finalizer on deletion.
        3. Checks the dependencies.
        4. Renders the templates and resolves copyFrom sources.
        5. Applies the rendered objects and prunes stale objects.
        6. Stores the inventory and revision in the status.

        Args:
            resource_id: The identifier for the ResourceSet resource.

        Raises:
            FluxException: When the reconciliation failed and should be retried.
        """
        if (doc := await self._cluster.get(resource_id)) is None:
            _LOGGER.debug("ResourceSet %s not found, skipping", resource_id)
            return ReconcileResult()
        try:
            obj = ResourceSet.parse_doc(doc)
        except InputException as err:
            _LOGGER.error("Unable to parse ResourceSet %s: %s", resource_id, err)
            return ReconcileResult()

        if not obj.is_deleting:
            if FINALIZER not in obj.finalizers:
                _LOGGER.info("Adding finalizer to ResourceSet %s", obj.namespaced_name)
                updated = copy.deepcopy(doc)
                updated["metadata"]["finalizers"] = obj.finalizers + [FINALIZER]
                await self._cluster.update(updated)
                return ReconcileResult(requeue=True)

            if obj.reconcile_disabled:
                _LOGGER.info(
                    "Reconciliation is disabled for ResourceSet %s",
                    obj.namespaced_name,
                )
                return ReconcileResult()

        try:
            timeout = obj.reconcile_timeout or self._config.reconcile_timeout
        except InputException as err:
            _LOGGER.warning(
                "Ignoring reconcileTimeout of ResourceSet %s: %s",
                obj.namespaced_name,
                err,
            )
            timeout = self._config.reconcile_timeout

        inventory = Inventory.from_status(obj.status.inventory)
        change_set = ChangeSet()
        try:
            async with asyncio.timeout(timeout):
                if obj.is_deleting:
                    return await self._finalize(obj, doc, change_set)
                return await self._reconcile(obj, change_set)
        except asyncio.TimeoutError as err:
            # Objects applied or deleted before the deadline are accounted for
            for ref in change_set.owned:
                inventory.add(ref)
            for entry in change_set.entries:
                if entry.action == ApplyAction.DELETED:
                    inventory.remove(entry.ref.id)
            obj.status.inventory = inventory.to_status()
            message = f"Reconciliation timed out after {timeout}s"
            _LOGGER.error("ResourceSet %s: %s", obj.namespaced_name, message)
            await self._mark_failed(obj, RECONCILIATION_FAILED_REASON, message)
            raise ReconcileError(message) from err

    async def _reconcile(
        self, obj: ResourceSet, change_set: ChangeSet
    ) -> ReconcileResult:
        _LOGGER.info("Reconciling ResourceSet %s", obj.namespaced_name)
        start = time.monotonic()
        ready = obj.status.get_condition(READY_CONDITION)
        if ready is None or ready.observed_generation != obj.generation:
            obj.status.set_condition(
                READY_CONDITION,
                CONDITION_UNKNOWN,
                PROGRESSING_REASON,
                "Reconciliation in progress",
                obj.generation,
            )
            await self._update_status(obj)

        # 1. Check the dependencies
        try:
            result = await self._gate.check(obj.spec.depends_on)
        except InvalidExpressionError as err:
            _LOGGER.error("ResourceSet %s: %s", obj.namespaced_name, err)
            await self._mark_failed(obj, INVALID_EXPRESSION_REASON, str(err))
            return ReconcileResult()
        if not result.ready:
            _LOGGER.info("ResourceSet %s: %s", obj.namespaced_name, result.message)
            await self._mark_failed(obj, DEPENDENCY_NOT_READY_REASON, result.message)
            return ReconcileResult(
                requeue_after=self._config.dependency_requeue_interval
            )

        # 2. Render the templates
        try:
            objects = build_resources(
                obj.spec.resources, obj.spec.inputs, obj.spec.common_metadata
            )
        except TemplateException as err:
            _LOGGER.error("ResourceSet %s build failed: %s", obj.namespaced_name, err)
            await self._mark_failed(obj, BUILD_FAILED_REASON, str(err))
            return ReconcileResult()
        for rendered in objects:
            _set_owner_labels(rendered, obj)

        # 3. Resolve copyFrom sources, as the service account if one is set
        try:
            cluster = await self._client_for(obj)
            objects = await CopyFromResolver(cluster).resolve_all(objects)
        except (ImpersonationError, CopyFromError) as err:
            await self._mark_failed(obj, RECONCILIATION_FAILED_REASON, str(err))
            raise ReconcileError(str(err)) from err

        # 4. Apply the objects then prune the stale ones
        previous = Inventory.from_status(obj.status.inventory)
        to_apply, to_prune = diff(previous.entries, objects)
        revision = checksum(to_apply)
        manager = ResourceManager(cluster)
        try:
            await manager.apply_all(to_apply, change_set)
        except ApplyError as err:
            # Partially applied objects are owned and tracked until pruned
            for ref in change_set.owned:
                previous.add(ref)
            obj.status.inventory = previous.to_status()
            await self._mark_failed(obj, RECONCILIATION_FAILED_REASON, str(err))
            raise ReconcileError(str(err)) from err

        inventory = Inventory(change_set.owned)
        try:
            await manager.delete_all(to_prune, change_set)
        except PruneError as err:
            released = {entry.ref.id for entry in change_set.entries}
            for ref in to_prune:
                if ref.id not in released:
                    inventory.add(ref)
            obj.status.inventory = inventory.to_status()
            await self._mark_failed(obj, RECONCILIATION_FAILED_REASON, str(err))
            raise ReconcileError(str(err)) from err

        if changes := str(change_set):
            _LOGGER.info("ResourceSet %s changes:\n%s", obj.namespaced_name, changes)

        # 5. Record the new inventory
        obj.status.inventory = inventory.to_status()
        obj.status.last_applied_revision = revision
        obj.status.set_condition(
            READY_CONDITION,
            CONDITION_TRUE,
            RECONCILIATION_SUCCEEDED_REASON,
            f"Reconciliation finished in {time.monotonic() - start:.1f}s",
            obj.generation,
        )
        await self._update_status(obj)
        _LOGGER.info("Successfully reconciled ResourceSet %s", obj.namespaced_name)

        try:
            interval = obj.reconcile_every or self._config.reconcile_interval
        except InputException as err:
            _LOGGER.warning(
                "Ignoring reconcileEvery of ResourceSet %s: %s",
                obj.namespaced_name,
                err,
            )
            interval = self._config.reconcile_interval
        return ReconcileResult(requeue_after=interval or 0.0)

    async def _finalize(
        self, obj: ResourceSet, doc: dict[str, Any], change_set: ChangeSet
    ) -> ReconcileResult:
        """Prune all objects in the inventory and remove the finalizer."""
        if FINALIZER not in obj.finalizers:
            return ReconcileResult()
        _LOGGER.info("Finalizing ResourceSet %s", obj.namespaced_name)
        if entries := obj.inventory_entries:
            try:
                cluster = await self._client_for(obj)
                await ResourceManager(cluster).delete_all(entries, change_set)
            except (ImpersonationError, PruneError) as err:
                released = {entry.ref.id for entry in change_set.entries}
                obj.status.inventory = Inventory(
                    entry for entry in entries if entry.id not in released
                ).to_status()
                await self._mark_failed(obj, RECONCILIATION_FAILED_REASON, str(err))
                raise ReconcileError(str(err)) from err
            if changes := str(change_set):
                _LOGGER.info(
                    "ResourceSet %s changes:\n%s", obj.namespaced_name, changes
                )

        updated = copy.deepcopy(doc)
        updated["metadata"]["finalizers"] = [
            finalizer for finalizer in obj.finalizers if finalizer != FINALIZER
        ]
        await self._cluster.update(updated)
        _LOGGER.info("ResourceSet %s finalized", obj.namespaced_name)
        return ReconcileResult()

    async def _client_for(self, obj: ResourceSet) -> Cluster:
        """Return the cluster client used to apply objects of the ResourceSet."""
        if not obj.spec.service_account_name:
            return self._cluster
        return await self._cluster.impersonate(
            NamedResource(
                kind=SERVICE_ACCOUNT_KIND,
                namespace=obj.namespace,
                name=obj.spec.service_account_name,
            )
        )

    async def _mark_failed(self, obj: ResourceSet, reason: str, message: str) -> None:
        obj.status.set_condition(
            READY_CONDITION, CONDITION_FALSE, reason, message, obj.generation
        )
        await self._update_status(obj)

    async def _update_status(self, obj: ResourceSet) -> None:
        updated = await self._cluster.update_status(obj.to_doc())
        obj.resource_version = updated["metadata"].get("resourceVersion")
