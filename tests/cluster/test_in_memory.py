"""Tests for the in memory cluster."""

import base64
from typing import Any

import pytest

from flux_resourceset.cluster import ApplyAction, ClusterEvent, InMemoryCluster
from flux_resourceset.exceptions import (
    ConflictError,
    ImpersonationError,
    ObjectNotFoundError,
)
from flux_resourceset.manifest import NamedResource

CONFIG_MAP_ID = NamedResource("ConfigMap", "apps", "settings")


def _config_map(**data: str) -> dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "settings", "namespace": "apps"},
        "data": data,
    }


@pytest.fixture(name="cluster")
def cluster_fixture() -> InMemoryCluster:
    return InMemoryCluster()


async def test_create_and_get(cluster: InMemoryCluster) -> None:
    """Test creating and reading an object."""
    assert await cluster.get(CONFIG_MAP_ID) is None
    created = await cluster.create(_config_map(key="value"))
    metadata = created["metadata"]
    assert metadata["generation"] == 1
    assert metadata["resourceVersion"]
    assert metadata["uid"]
    assert metadata["creationTimestamp"]

    obj = await cluster.get(CONFIG_MAP_ID)
    assert obj == created
    obj["data"]["key"] = "modified"
    assert cluster.get_object(CONFIG_MAP_ID) == created

    with pytest.raises(ConflictError, match="already exists"):
        await cluster.create(_config_map())


async def test_list(cluster: InMemoryCluster) -> None:
    """Test listing objects by kind and namespace."""
    cluster.add_object(_config_map())
    other = _config_map()
    other["metadata"]["namespace"] = "other"
    cluster.add_object(other)
    cluster.add_object(
        {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "apps"}}
    )
    assert len(await cluster.list("ConfigMap")) == 2
    assert len(await cluster.list("ConfigMap", namespace="apps")) == 1
    assert len(await cluster.list("Namespace")) == 1
    assert await cluster.list("ConfigMap", group="apps") == []


async def test_apply(cluster: InMemoryCluster) -> None:
    """Test applying objects as an upsert."""
    assert await cluster.apply(_config_map(key="value")) == ApplyAction.CREATED
    created = cluster.get_object(CONFIG_MAP_ID)
    assert created

    assert await cluster.apply(_config_map(key="value")) == ApplyAction.UNCHANGED
    assert cluster.get_object(CONFIG_MAP_ID) == created

    assert await cluster.apply(_config_map(key="other")) == ApplyAction.CONFIGURED
    updated = cluster.get_object(CONFIG_MAP_ID)
    assert updated
    assert updated["data"] == {"key": "other"}
    assert updated["metadata"]["generation"] == 2
    assert updated["metadata"]["uid"] == created["metadata"]["uid"]
    assert (
        updated["metadata"]["resourceVersion"]
        != created["metadata"]["resourceVersion"]
    )


async def test_apply_metadata_keeps_generation(cluster: InMemoryCluster) -> None:
    """Test that a metadata only change does not bump the generation."""
    await cluster.apply(_config_map(key="value"))
    obj = _config_map(key="value")
    obj["metadata"]["labels"] = {"team": "a"}
    assert await cluster.apply(obj) == ApplyAction.CONFIGURED
    updated = cluster.get_object(CONFIG_MAP_ID)
    assert updated
    assert updated["metadata"]["generation"] == 1
    assert updated["metadata"]["labels"] == {"team": "a"}


async def test_apply_keeps_status(cluster: InMemoryCluster) -> None:
    """Test that apply does not overwrite the status."""
    await cluster.apply(_config_map(key="value"))
    obj = cluster.get_object(CONFIG_MAP_ID)
    assert obj
    obj["status"] = {"phase": "Ready"}
    await cluster.update_status(obj)

    desired = _config_map(key="value")
    desired["status"] = {"phase": "Ignored"}
    assert await cluster.apply(desired) == ApplyAction.UNCHANGED
    updated = cluster.get_object(CONFIG_MAP_ID)
    assert updated
    assert updated["status"] == {"phase": "Ready"}


async def test_secret_string_data(cluster: InMemoryCluster) -> None:
    """Test that Secret stringData is stored as base64 data."""
    await cluster.apply(
        {
            "apiVersion": "v1",
            "kind": "Secret",
            "metadata": {"name": "token", "namespace": "apps"},
            "data": {"existing": "dmFsdWU="},
            "stringData": {"token": "secret"},
        }
    )
    obj = cluster.get_object(NamedResource("Secret", "apps", "token"))
    assert obj
    assert "stringData" not in obj
    assert obj["data"] == {
        "existing": "dmFsdWU=",
        "token": base64.b64encode(b"secret").decode(),
    }


async def test_update(cluster: InMemoryCluster) -> None:
    """Test updating an object with optimistic concurrency."""
    created = cluster.add_object(_config_map(key="value"))
    created["metadata"]["labels"] = {"team": "a"}
    updated = await cluster.update(created)
    assert updated["metadata"]["labels"] == {"team": "a"}

    # The version read before the first update is now stale
    with pytest.raises(ConflictError, match="the object has been modified"):
        await cluster.update(created)

    missing = _config_map()
    missing["metadata"]["name"] = "missing"
    with pytest.raises(ObjectNotFoundError):
        await cluster.update(missing)


async def test_update_status(cluster: InMemoryCluster) -> None:
    """Test that a status update only changes the status."""
    created = cluster.add_object(_config_map(key="value"))
    created["data"] = {"key": "ignored"}
    created["status"] = {"phase": "Ready"}
    updated = await cluster.update_status(created)
    assert updated["data"] == {"key": "value"}
    assert updated["status"] == {"phase": "Ready"}
    assert updated["metadata"]["generation"] == 1


async def test_delete(cluster: InMemoryCluster) -> None:
    """Test deleting an object without finalizers."""
    cluster.add_object(_config_map())
    await cluster.delete(CONFIG_MAP_ID)
    assert cluster.get_object(CONFIG_MAP_ID) is None
    with pytest.raises(ObjectNotFoundError):
        await cluster.delete(CONFIG_MAP_ID)


async def test_delete_with_finalizer(cluster: InMemoryCluster) -> None:
    """Test that finalizers hold back deletion until removed."""
    obj = _config_map()
    obj["metadata"]["finalizers"] = ["example.com/finalizer"]
    cluster.add_object(obj)
    await cluster.delete(CONFIG_MAP_ID)

    deleting = cluster.get_object(CONFIG_MAP_ID)
    assert deleting
    assert deleting["metadata"]["deletionTimestamp"]

    deleting["metadata"]["finalizers"] = []
    await cluster.update(deleting)
    assert cluster.get_object(CONFIG_MAP_ID) is None


async def test_listeners(cluster: InMemoryCluster) -> None:
    """Test that listeners are notified of changes and deletions."""
    changed: list[NamedResource] = []
    deleted: list[NamedResource] = []
    remove = cluster.add_listener(
        ClusterEvent.OBJECT_CHANGED,
        lambda resource_id, obj: changed.append(resource_id),
    )
    cluster.add_listener(
        ClusterEvent.OBJECT_DELETED,
        lambda resource_id, obj: deleted.append(resource_id),
    )

    await cluster.apply(_config_map(key="value"))
    await cluster.apply(_config_map(key="value"))
    await cluster.apply(_config_map(key="other"))
    assert changed == [CONFIG_MAP_ID, CONFIG_MAP_ID]

    remove()
    await cluster.delete(CONFIG_MAP_ID)
    assert changed == [CONFIG_MAP_ID, CONFIG_MAP_ID]
    assert deleted == [CONFIG_MAP_ID]


async def test_listener_error(cluster: InMemoryCluster) -> None:
    """Test that a failing listener does not fail the write."""

    def fail(resource_id: NamedResource, obj: dict[str, Any]) -> None:
        raise ValueError("boom")

    cluster.add_listener(ClusterEvent.OBJECT_CHANGED, fail)
    await cluster.apply(_config_map())
    assert cluster.get_object(CONFIG_MAP_ID)


async def test_impersonate(cluster: InMemoryCluster) -> None:
    """Test acting as a service account."""
    account_id = NamedResource("ServiceAccount", "apps", "deployer")
    assert cluster.username is None
    with pytest.raises(
        ImpersonationError,
        match="failed to impersonate service account 'apps/deployer': not found",
    ):
        await cluster.impersonate(account_id)

    cluster.add_object(
        {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": "deployer", "namespace": "apps"},
        }
    )
    impersonated = await cluster.impersonate(account_id)
    assert impersonated.username == "system:serviceaccount:apps:deployer"
    assert await impersonated.apply(_config_map()) == ApplyAction.CREATED
    assert cluster.get_object(CONFIG_MAP_ID)
    assert await impersonated.get(CONFIG_MAP_ID) == cluster.get_object(CONFIG_MAP_ID)
