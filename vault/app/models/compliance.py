"""
Compliance event and report models.

Each event class carries only identifiers. The tracker maps every event to a
fixed (event_type, resource_type, resource_id, action, phi) tuple; see
``vault.app.services.compliance_tracker.map_event``.
"""

from enum import Enum
from typing import ClassVar, Dict, List, Optional

from pydantic import BaseModel, Field


class ComplianceEventType(str, Enum):
    NOTE_CREATED = "note_created"
    NOTE_ACCESSED = "note_accessed"
    NOTE_UPDATED = "note_updated"
    NOTE_DELETED = "note_deleted"
    CONSENT_RECORDED = "consent_recorded"
    CONSENT_WITHDRAWN = "consent_withdrawn"
    DATA_SUBJECT_REQUEST = "data_subject_request"
    BREACH_DETECTED = "breach_detected"
    DATA_DEIDENTIFIED = "data_deidentified"
    AUDIT_TRAIL_ACCESSED = "audit_trail_accessed"


class ResourceType(str, Enum):
    MEDICAL_NOTE = "medical_note"
    CONSENT = "consent"
    DATA_SUBJECT_REQUEST = "data_subject_request"
    SECURITY_BREACH = "security_breach"
    DEIDENTIFIED_DATA = "deidentified_data"
    AUDIT_TRAIL = "audit_trail"


class ComplianceEvent(BaseModel):
    """Base class for tracker events."""

    event_type: ClassVar[ComplianceEventType]


class NoteCreated(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.NOTE_CREATED
    note_id: str
    practitioner_id: str
    client_id: str


class NoteAccessed(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.NOTE_ACCESSED
    note_id: str
    practitioner_id: str


class NoteUpdated(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.NOTE_UPDATED
    note_id: str
    practitioner_id: str


class NoteDeleted(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.NOTE_DELETED
    note_id: str
    practitioner_id: str


class ConsentRecorded(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.CONSENT_RECORDED
    consent_id: str
    client_id: str
    data_types: List[str] = Field(default_factory=list)


class ConsentWithdrawn(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.CONSENT_WITHDRAWN
    consent_id: str
    client_id: str


class DataSubjectRequest(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.DATA_SUBJECT_REQUEST
    request_id: str
    client_id: str
    request_type: str


class BreachDetected(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.BREACH_DETECTED
    breach_id: str
    severity: str
    affected_clients: List[str] = Field(default_factory=list)


class DataDeidentified(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.DATA_DEIDENTIFIED
    original_id: str = Field(..., description="Hash or ID of the source text")
    deidentified_id: str = Field(..., description="Hash or ID of the cleaned text")


class AuditTrailAccessed(ComplianceEvent):
    event_type: ClassVar[ComplianceEventType] = ComplianceEventType.AUDIT_TRAIL_ACCESSED
    accessor_id: str
    target_resource: str


class ComplianceAuditLog(BaseModel):
    """A persisted compliance event."""

    id: str
    timestamp: str
    event_type: ComplianceEventType
    event_data: str = Field(..., description="JSON-serialized event payload")
    practitioner_id: Optional[str] = None
    client_id: Optional[str] = None
    resource_type: ResourceType
    resource_id: str
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    compliant: bool = True
    phi_accessed: bool
    retention_period_days: int


class ComplianceValidationResult(BaseModel):
    """Outcome of a pre-creation check; callers decide whether to block."""

    is_compliant: bool
    violations: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


class ComplianceReport(BaseModel):
    report_period_start: str
    report_period_end: str
    generated_at: str
    event_summary: Dict[str, int] = Field(default_factory=dict)
    phi_access_count: int = 0
    compliance_violations: int = 0
    retention_summary: Dict[str, int] = Field(default_factory=dict)


class DataSubjectRight(str, Enum):
    ACCESS = "access"
    RECTIFICATION = "rectification"
    ERASURE = "erasure"
    PORTABILITY = "portability"
    RESTRICTION = "restriction"
    OBJECTION = "objection"


class BreachSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class DataSubjectRequestRecord(BaseModel):
    """A client's rights request; must be answered by ``due_date``."""

    id: str
    client_id: str
    request_type: DataSubjectRight
    status: str = "pending"
    requested_at: str
    due_date: str


class BreachIncident(BaseModel):
    """A reported security incident. Descriptions must not contain PHI."""

    id: str
    breach_type: str
    severity: BreachSeverity
    description: Optional[str] = None
    affected_clients: List[str] = Field(default_factory=list)
    detected_at: str
    incident_status: str = "detected"
    regulator_notification_required: bool = Field(
        ..., description="High and critical incidents must be reported to the regulator"
    )
