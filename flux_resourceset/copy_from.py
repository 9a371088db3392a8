"""Module for copying data from existing ConfigMaps and Secrets.

A rendered ConfigMap or Secret annotated with
`fluxcd.controlplane.io/copyFrom: <namespace>/<name>` gets its payload
replaced with the payload of the source object on every reconciliation.
"""

import copy
import logging
from typing import Any

from .cluster import Cluster
from .exceptions import CopyFromError
from .manifest import (
    CONFIG_MAP_KIND,
    COPY_FROM_ANNOTATION,
    SECRET_KIND,
    NamedResource,
)

__all__ = [
    "CopyFromResolver",
    "copy_from_source",
]

_LOGGER = logging.getLogger(__name__)

_PAYLOAD_FIELDS = {
    CONFIG_MAP_KIND: ("data", "binaryData"),
    SECRET_KIND: ("data",),
}


def copy_from_source(obj: dict[str, Any]) -> NamedResource | None:
    """Return the source object of a copyFrom annotation, if any."""
    annotations = (obj.get("metadata") or {}).get("annotations") or {}
    if not (source := annotations.get(COPY_FROM_ANNOTATION)):
        return None
    resource_id = NamedResource.from_doc(obj)
    if resource_id.kind not in _PAYLOAD_FIELDS or resource_id.group:
        raise CopyFromError(
            f"{resource_id} has a copyFrom annotation but only ConfigMap and "
            "Secret objects are supported"
        )
    namespace, sep, name = source.partition("/")
    if not sep or not namespace or not name or "/" in name:
        raise CopyFromError(
            f"{resource_id} has an invalid copyFrom annotation '{source}', "
            "expected <namespace>/<name>"
        )
    return NamedResource(
        kind=resource_id.kind, namespace=namespace, name=name, group=resource_id.group
    )


class CopyFromResolver:
    """Replaces the payload of rendered objects with their copyFrom source."""

    def __init__(self, cluster: Cluster) -> None:
        """Initialize CopyFromResolver."""
        self._cluster = cluster

    async def resolve(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Return the object with the payload copied from its source.

        Objects without a copyFrom annotation are returned unchanged.

        Raises:
            CopyFromError: If the annotation is invalid or the source is missing.
        """
        if (source_id := copy_from_source(obj)) is None:
            return obj
        if (source := await self._cluster.get(source_id)) is None:
            raise CopyFromError(
                f"{NamedResource.from_doc(obj)} copyFrom source {source_id} not found"
            )
        _LOGGER.debug("Copying data from %s", source_id)
        result = copy.deepcopy(obj)
        result.pop("stringData", None)
        for key in _PAYLOAD_FIELDS[source_id.kind]:
            if key in source:
                result[key] = copy.deepcopy(source[key])
            else:
                result.pop(key, None)
        if source_id.kind == SECRET_KIND and "type" not in obj and "type" in source:
            result["type"] = source["type"]
        return result

    async def resolve_all(self, objects: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Resolve the copyFrom annotation of every object, in order."""
        return [await self.resolve(obj) for obj in objects]
