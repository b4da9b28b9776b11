"""
Pytest configuration for clusterlink tests.

Silences console output and provides config / fake cluster fixtures.
"""

import json

import pytest
import pytest_asyncio

from clusterlink import constants, utils
from clusterlink.config import ClusterConfig
from clusterlink.manager import ClusterManager

from tests.helpers import FakeCluster, FakeConnection


def pytest_configure(config):
    """Configure custom markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


@pytest.fixture(autouse=True)
def quiet_console(monkeypatch):
    """Keep prompt_toolkit output out of the test run."""
    monkeypatch.setattr(utils, "_print_pt_original", lambda *args, **kwargs: None)
    monkeypatch.setattr(constants, "DEBUG_LEVEL", 0)


@pytest.fixture
def config_factory(tmp_path):
    """Build a ClusterConfig from a JSON file written to tmp_path."""
    def create_config(clusters=None, mycall="N0CALL", **settings) -> ClusterConfig:
        data = {"mycall": mycall, "clusters": clusters or []}
        data.update(settings)
        path = tmp_path / "clusterlink.json"
        path.write_text(json.dumps(data))
        return ClusterConfig(str(path))

    return create_config


@pytest.fixture
def manager_factory(config_factory):
    """Build a ClusterManager over FakeConnection with fast replay timings."""
    def create_manager(clusters=None, mycall="N0CALL", **kwargs) -> ClusterManager:
        config = config_factory(clusters=clusters, mycall=mycall)
        options = dict(
            connection_factory=FakeConnection,
            replay_grace=0,
            prompt_timeout=0.01,
            login_delay=0,
            command_delay=0,
            backoff_initial=0.01,
            backoff_max=0.05,
            worker_connect_timeout=0.5,
        )
        options.update(kwargs)
        return ClusterManager(config, **options)

    return create_manager


@pytest_asyncio.fixture
async def fake_cluster():
    cluster = await FakeCluster().start()
    yield cluster
    await cluster.stop()
