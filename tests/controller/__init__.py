"""Tests for the ResourceSet controller."""

import asyncio
from typing import Any

from flux_resourceset.cluster import ApplyAction, InMemoryCluster
from flux_resourceset.exceptions import FluxException
from flux_resourceset.manifest import NamedResource


class FaultyCluster(InMemoryCluster):
    """An in memory cluster that fails or delays writes for selected object names."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_apply: set[str] = set()
        self.fail_delete: set[str] = set()
        self.apply_delay = 0.0
        self.delays: dict[str, float] = {}

    async def apply(self, obj: dict[str, Any]) -> ApplyAction:
        if delay := self.apply_delay or self.delays.get(obj["metadata"]["name"]):
            await asyncio.sleep(delay)
        if obj["metadata"]["name"] in self.fail_apply:
            raise FluxException("admission webhook denied the request")
        return await super().apply(obj)

    async def delete(self, resource_id: NamedResource) -> None:
        if delay := self.delays.get(resource_id.name):
            await asyncio.sleep(delay)
        if resource_id.name in self.fail_delete:
            raise FluxException("admission webhook denied the request")
        await super().delete(resource_id)
