"""
Process-wide service registry for the HTTP layer.

Holds one record store, compliance tracker, de-identification engine and
sync coordinator, all bound to the same database file. The store starts
uninitialized; ``POST /v1/storage/initialize`` supplies the passphrase.
"""

import threading
from pathlib import Path
from typing import Optional, Union

from vault.app.config import get_remote_url
from vault.app.logging_config import get_logger
from vault.app.services.compliance_tracker import ComplianceTracker
from vault.app.services.deidentification import DeidentificationEngine
from vault.app.services.record_store import EncryptedRecordStore
from vault.app.services.remote_store import HttpDocumentStore, InMemoryDocumentStore
from vault.app.services.sync_coordinator import SyncCoordinator

logger = get_logger("registry")


class VaultServices:
    """The services behind one vault database."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None, remote=None):
        self.tracker = ComplianceTracker(db_path)
        self.store = EncryptedRecordStore(self.tracker.db_path, tracker=self.tracker)
        self.engine = DeidentificationEngine()
        if remote is None:
            url = get_remote_url()
            remote = HttpDocumentStore(url) if url else InMemoryDocumentStore()
        self.remote = remote
        self.coordinator = SyncCoordinator(self.store, self.remote)

    @property
    def db_path(self) -> Path:
        return self.store.db_path

    def shutdown(self) -> None:
        self.coordinator.stop_background_sync()


_services: Optional[VaultServices] = None
_lock = threading.Lock()


def get_services() -> VaultServices:
    """The global services instance, created on first use."""
    global _services
    with _lock:
        if _services is None:
            _services = VaultServices()
            logger.info("services_created", remote=type(_services.remote).__name__)
        return _services


def reset_services(db_path: Optional[Union[str, Path]] = None, remote=None) -> VaultServices:
    """Replace the global instance (tests and re-configuration)."""
    global _services
    with _lock:
        if _services is not None:
            _services.shutdown()
        _services = VaultServices(db_path, remote=remote)
        return _services
