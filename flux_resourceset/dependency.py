"""Readiness checks for the dependencies of a ResourceSet.

Dependencies are checked in order and the first one that is missing or
not ready is reported. A readiness expression that can't be parsed is a
configuration error and is raised instead of reported, since retrying
will not fix it.
"""

from dataclasses import dataclass
import logging
from typing import Any

from .cluster import Cluster
from .exceptions import ExpressionEvaluationError
from .expression import CelEvaluator, ExpressionEvaluator
from .manifest import (
    CONDITION_TRUE,
    CRD_KIND,
    DEPLOYMENT_KIND,
    READY_CONDITION,
    Dependency,
)

__all__ = [
    "DependencyResult",
    "DependencyGate",
    "compute_readiness",
]

_LOGGER = logging.getLogger(__name__)

ESTABLISHED_CONDITION = "Established"
STALLED_CONDITION = "Stalled"
RECONCILING_CONDITION = "Reconciling"


@dataclass
class DependencyResult:
    """Outcome of checking all dependencies."""

    ready: bool
    message: str


def compute_readiness(obj: dict[str, Any]) -> tuple[bool, str]:
    """Return whether an object is ready based on its status.

    Objects that don't report conditions are considered ready once they
    exist.
    """
    metadata = obj.get("metadata") or {}
    status = obj.get("status") or {}
    conditions = {
        condition.get("type"): condition
        for condition in status.get("conditions") or ()
        if isinstance(condition, dict)
    }
    generation = metadata.get("generation")
    observed_generation = status.get("observedGeneration")
    if (
        generation is not None
        and observed_generation is not None
        and observed_generation < generation
    ):
        return (
            False,
            f"observed generation {observed_generation} is behind {generation}",
        )
    kind = obj.get("kind")
    if kind == CRD_KIND:
        established = conditions.get(ESTABLISHED_CONDITION) or {}
        if established.get("status") != CONDITION_TRUE:
            return False, "not established"
    if kind == DEPLOYMENT_KIND:
        desired = (obj.get("spec") or {}).get("replicas", 1)
        available = status.get("availableReplicas", 0)
        if available < desired:
            return False, f"{available}/{desired} replicas available"
    stalled = conditions.get(STALLED_CONDITION) or {}
    if stalled.get("status") == CONDITION_TRUE:
        return False, f"stalled: {stalled.get('message', '')}"
    reconciling = conditions.get(RECONCILING_CONDITION) or {}
    if reconciling.get("status") == CONDITION_TRUE:
        return False, f"reconciling: {reconciling.get('message', '')}"
    if (ready := conditions.get(READY_CONDITION)) is not None:
        if ready.get("status") != CONDITION_TRUE:
            return False, ready.get("message") or "not ready"
    return True, ""


class DependencyGate:
    """Checks that the dependencies of a ResourceSet exist and are ready."""

    def __init__(
        self, cluster: Cluster, evaluator: ExpressionEvaluator | None = None
    ) -> None:
        """Initialize DependencyGate."""
        self._cluster = cluster
        self._evaluator = evaluator or CelEvaluator()

    async def check(self, dependencies: list[Dependency]) -> DependencyResult:
        """Check the dependencies in order, stopping at the first unmet one.

        Raises:
            InvalidExpressionError: If a readiness expression can't be parsed.
        """
        for dependency in dependencies:
            resource_id = dependency.resource_id
            _LOGGER.debug("Checking dependency %s", resource_id)
            if (obj := await self._cluster.get(resource_id)) is None:
                return DependencyResult(
                    False,
                    f"dependency {resource_id}: "
                    f'{resource_id.kind} "{resource_id.name}" not found',
                )
            if not dependency.ready:
                continue
            if dependency.ready_expr:
                program = self._evaluator.compile(dependency.ready_expr)
                variables = {
                    "status": obj.get("status") or {},
                    "metadata": obj.get("metadata") or {},
                    "spec": obj.get("spec") or {},
                }
                try:
                    ready = self._evaluator.evaluate(program, variables)
                except ExpressionEvaluationError as err:
                    return DependencyResult(
                        False, f"dependency {resource_id} not ready: {err}"
                    )
                if not ready:
                    return DependencyResult(
                        False,
                        f"dependency {resource_id} not ready: expression "
                        f"'{dependency.ready_expr.strip()}' is false",
                    )
                continue
            ready, reason = compute_readiness(obj)
            if not ready:
                return DependencyResult(
                    False, f"dependency {resource_id} not ready: {reason}"
                )
        return DependencyResult(True, "All dependencies are ready")
