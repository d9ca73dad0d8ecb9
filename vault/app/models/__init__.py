"""
Pydantic models for the Clinical Note Vault.
"""

from vault.app.models.notes import (
    AuditContext,
    AuditEntry,
    ClinicalNote,
    ComplianceMetadata,
    EncryptedEnvelope,
    EncryptedRecord,
    SyncStatus,
)
from vault.app.models.sync import ConflictKind, ResolutionStrategy, SyncConflict

__all__ = [
    "AuditContext",
    "AuditEntry",
    "ClinicalNote",
    "ComplianceMetadata",
    "ConflictKind",
    "EncryptedEnvelope",
    "EncryptedRecord",
    "ResolutionStrategy",
    "SyncConflict",
    "SyncStatus",
]
