"""
Request bodies for the vault API.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from vault.app.models.compliance import BreachSeverity, DataSubjectRight
from vault.app.models.deidentification import ComplianceLevel
from vault.app.models.notes import ComplianceMetadata
from vault.app.models.sync import ResolutionStrategy


class InitializeStorageRequest(BaseModel):
    passphrase: str = Field(..., min_length=1, description="Store passphrase (never logged)")


class NoteInput(BaseModel):
    """A note as submitted by a client; sync bookkeeping is server-owned."""

    id: Optional[str] = Field(default=None, description="Existing note ID for updates")
    patient_id: str = Field(..., min_length=1)
    template_type: str = Field(..., min_length=1)
    content: str = ""
    consent_obtained: bool = False
    compliance_metadata: ComplianceMetadata = Field(default_factory=ComplianceMetadata)
    local_edit: bool = Field(default=True, description="Queue the note for upload")


class NoteDefaultsRequest(BaseModel):
    patient_id: str = Field(..., min_length=1)
    template_type: str = Field(..., min_length=1)


class ValidateCreationRequest(BaseModel):
    client_id: str
    template_id: str
    consent_id: Optional[str] = None
    practitioner_id: Optional[str] = Field(
        default=None, description="Defaults to the authenticated user"
    )


class RegisterProfessionalRequest(BaseModel):
    professional_id: str
    license_number: Optional[str] = None
    license_expiry: Optional[datetime] = None
    full_name: Optional[str] = None
    professional_order: Optional[str] = None


class RecordConsentRequest(BaseModel):
    client_id: str
    consent_type: str
    data_types: List[str] = Field(default_factory=list)
    expiry_date: Optional[datetime] = None


class WithdrawRegisteredConsentRequest(BaseModel):
    client_id: str


class DeidentifyRequest(BaseModel):
    text: str
    level: ComplianceLevel = ComplianceLevel.FEDERAL


class ResolveConflictRequest(BaseModel):
    """
    ``manual_review`` requires ``content``; ``use_local`` and ``use_remote``
    ignore it.
    """

    strategy: ResolutionStrategy
    content: Optional[str] = None


class SyncToggleRequest(BaseModel):
    enabled: bool


class DataSubjectRequestInput(BaseModel):
    client_id: str = Field(..., min_length=1)
    request_type: DataSubjectRight


class ReportBreachRequest(BaseModel):
    severity: BreachSeverity
    breach_type: str = "unspecified"
    description: Optional[str] = Field(default=None, description="Free text; must not contain PHI")
    affected_clients: List[str] = Field(default_factory=list)
