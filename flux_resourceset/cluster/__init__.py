"""
The cluster module provides access to the objects of a kubernetes cluster.

- Uses NamedResource as the key for all objects.
- Objects are plain kubernetes documents (dicts).
- The ResourceManager applies and deletes ordered sets of objects and
  reports the outcome for each object in a ChangeSet.

The abstract interface allows for various implementations (in-memory, API
server backed, etc.).
"""

from .cluster import Cluster, ClusterEvent, ApplyAction
from .in_memory import InMemoryCluster
from .apply import ChangeSet, ChangeSetEntry, ResourceManager

__all__ = [
    "Cluster",
    "ClusterEvent",
    "ApplyAction",
    "InMemoryCluster",
    "ChangeSet",
    "ChangeSetEntry",
    "ResourceManager",
]
