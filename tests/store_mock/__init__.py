"""Store and collaborator mocks for provisioning tests.

This package provides in-memory stand-ins for everything the provisioning
engine talks to, so tests can assert on store traffic without a database.

Key Features:
- Recording store that counts every create, update and delete
- Error injection per entity kind and operation
- Fake dashboard provisioner with call recording and failure switches
- Recording search indexer

Usage:
    from store_mock import RecordingStore

    store = RecordingStore()
    await datasources.provision(path, ProvisionerDeps(store=store))
    assert store.write_count == 1
"""

from .dashboards import FakeDashboardProvisioner, FakeProvisionerFactory
from .services import DenyAccessControl, FixedQuota, RecordingSearchIndexer, StaticPluginRegistry
from .store import RecordingCollection, RecordingStore, write_yaml

__all__ = [
    "DenyAccessControl",
    "FakeDashboardProvisioner",
    "FakeProvisionerFactory",
    "FixedQuota",
    "RecordingCollection",
    "RecordingSearchIndexer",
    "RecordingStore",
    "StaticPluginRegistry",
    "write_yaml",
]
