"""ResourceSet Controller module.

This module provides the ResourceSetController for reconciling ResourceSet
resources and the Manager that runs it for every ResourceSet in a cluster.
"""

from .controller import (
    ResourceSetController,
    ResourceSetControllerConfig,
    ReconcileResult,
)
from .manager import Manager, ManagerConfig

__all__ = [
    "ResourceSetController",
    "ResourceSetControllerConfig",
    "ReconcileResult",
    "Manager",
    "ManagerConfig",
]
