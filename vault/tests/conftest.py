"""
Pytest configuration for vault tests.

The environment variables are set at module level (not in pytest_configure)
because they must be in place before any vault module is imported during
collection.
"""

import os

os.environ["ENV"] = "TEST"
os.environ["DISABLE_RATE_LIMITS"] = "1"

import pytest

from vault.app.services.compliance_tracker import ComplianceTracker
from vault.app.services.record_store import EncryptedRecordStore
from vault.app.services.remote_store import InMemoryDocumentStore
from vault.app.services.sync_coordinator import SyncCoordinator
from vault.tests.test_helpers import TEST_PASSPHRASE


@pytest.fixture
def db_path(tmp_path):
    """A fresh database file per test."""
    return tmp_path / "vault.db"


@pytest.fixture
def tracker(db_path):
    return ComplianceTracker(db_path).initialize()


@pytest.fixture
def store(db_path, tracker):
    """An initialized store with a compliance tracker attached."""
    return EncryptedRecordStore(db_path, tracker=tracker).initialize(TEST_PASSPHRASE)


@pytest.fixture
def remote():
    return InMemoryDocumentStore()


@pytest.fixture
def coordinator(store, remote):
    coordinator = SyncCoordinator(store, remote, collection="notes-test")
    yield coordinator
    coordinator.stop_background_sync()
