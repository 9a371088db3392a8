"""Fixtures for the ResourceSet controller tests."""

import pytest

from flux_resourceset.controller import (
    ResourceSetController,
    ResourceSetControllerConfig,
)

from . import FaultyCluster


@pytest.fixture(name="cluster")
def cluster_fixture() -> FaultyCluster:
    """Create an empty cluster."""
    return FaultyCluster()


@pytest.fixture(name="config")
def config_fixture() -> ResourceSetControllerConfig:
    """Create the controller configuration."""
    return ResourceSetControllerConfig()


@pytest.fixture(name="controller")
def controller_fixture(
    cluster: FaultyCluster, config: ResourceSetControllerConfig
) -> ResourceSetController:
    """Create a controller for the cluster."""
    return ResourceSetController(cluster, config)
