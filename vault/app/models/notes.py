"""
Clinical note models.

``ClinicalNote.content`` is plaintext and only ever lives in memory; the
record store persists it as an encrypted envelope.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


DEFAULT_RETENTION_DAYS = 2555  # 7 years
SHORT_RETENTION_DAYS = 365


class SyncStatus(str, Enum):
    """Per-note sync state."""

    LOCAL = "local"
    PENDING = "pending"
    SYNCED = "synced"
    CONFLICT = "conflict"


class AuditEntry(BaseModel):
    """One append-only access record for a note (or a note listing)."""

    id: str = Field(..., description="Audit entry identifier (UUIDv7)")
    timestamp: str = Field(..., description="When the access occurred (ISO 8601 UTC)")
    note_id: Optional[str] = Field(default=None, description="Note accessed; None for listings and audit reads")
    action: str = Field(..., description="create, read, update, delete, list or audit_access")
    user_id: str = Field(..., description="Actor identity")
    phi_accessed: bool = Field(..., description="Whether protected content was touched")
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = Field(default=None, description="Structured, PHI-free details")
    retention_period_days: int = Field(..., description="Minimum retention for this entry")


class ComplianceMetadata(BaseModel):
    """Consent and retention flags carried by every note."""

    explicit_consent: bool = Field(default=False, description="Regional explicit-consent flag")
    data_minimization: bool = Field(default=True, description="Only necessary data is collected")
    retention_period_days: int = Field(default=DEFAULT_RETENTION_DAYS, description="Record retention, must be > 0")
    professional_order: Optional[str] = Field(default=None, description="Organization or licence reference")
    audit_trail: List[AuditEntry] = Field(default_factory=list)


class ClinicalNote(BaseModel):
    """A single free-text clinical record."""

    id: Optional[str] = Field(default=None, description="Generated at save time when absent")
    patient_id: str
    template_type: str
    content: str = ""
    created_at: Optional[str] = None
    modified_at: Optional[str] = None
    consent_obtained: bool = False
    deidentified: bool = False
    encrypted: bool = False
    sync_status: SyncStatus = SyncStatus.LOCAL
    compliance_metadata: ComplianceMetadata = Field(default_factory=ComplianceMetadata)

    # Sync bookkeeping, maintained by the store and the sync coordinator.
    version: int = Field(default=0, description="Local content version, bumped on each content write")
    synced_version: int = Field(default=0, description="Remote version last reconciled")
    synced_at: Optional[str] = Field(default=None, description="Remote modified_at last reconciled")


class AuditContext(BaseModel):
    """Optional network/session context recorded with audit entries."""

    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None


class EncryptedEnvelope(BaseModel):
    """Ciphertext plus the metadata needed to verify and decrypt it."""

    ciphertext: bytes
    nonce: bytes
    checksum: str = Field(..., description="SHA-256 of the ciphertext")
    key_id: str
    content_hash: str = Field(..., description="SHA-256 of the plaintext content")
    encryption_version: int = 1


class EncryptedRecord(BaseModel):
    """
    A note as stored on disk or exchanged with the sync peer: every field of
    ``ClinicalNote`` except the plaintext content, plus the envelope.
    """

    id: str
    patient_id: str
    template_type: str
    created_at: str
    modified_at: str
    consent_obtained: bool
    deidentified: bool = True
    encrypted: bool = True
    sync_status: SyncStatus = SyncStatus.LOCAL
    compliance_metadata: ComplianceMetadata
    version: int = 1
    synced_version: int = 0
    synced_at: Optional[str] = None
    envelope: EncryptedEnvelope
