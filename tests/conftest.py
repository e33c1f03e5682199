"""Test configuration for pytest."""

import pytest

from qrpop_store.config import PersistenceConfig
from qrpop_store.facade import Persistence
from qrpop_store.indexing.search_index import InMemorySearchIndex


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


@pytest.fixture
def search_index():
    return InMemorySearchIndex()


@pytest.fixture
def persistence(search_index):
    """In-memory persistence with indexing against an in-memory index."""
    with Persistence(PersistenceConfig.for_testing(), search_index=search_index) as p:
        yield p


@pytest.fixture
def file_config(tmp_path):
    """On-disk configuration rooted in a temporary shared container."""
    return PersistenceConfig(
        shared_root=tmp_path / "groups",
        search_indexing=False,
        use_cloud_sync=False,
    )
