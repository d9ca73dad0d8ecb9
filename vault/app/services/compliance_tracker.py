"""
Compliance audit tracker.

Records structured lifecycle events (note created/accessed/updated/deleted,
consent recorded/withdrawn, data-subject requests, breaches, de-identification
and audit-trail access) with one consistent shape, whatever component
triggered them. Also owns the professional-licence and consent registries used to
validate note creation, and the data-subject request and security incident
registers.

Retention policy:
  - 2555 days (7 years) when the event touched protected content or the
    resource is a medical note
  - 365 days otherwise
"""

import json
import sqlite3
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from vault.app.db.migrate import ensure_schema, get_connection, get_db_path, transaction
from vault.app.logging_config import get_logger
from vault.app.models.compliance import (
    AuditTrailAccessed,
    BreachDetected,
    BreachIncident,
    BreachSeverity,
    ComplianceAuditLog,
    ComplianceEvent,
    ComplianceReport,
    ComplianceValidationResult,
    ConsentRecorded,
    ConsentWithdrawn,
    DataDeidentified,
    DataSubjectRequest,
    DataSubjectRequestRecord,
    DataSubjectRight,
    NoteAccessed,
    NoteCreated,
    NoteDeleted,
    NoteUpdated,
    ResourceType,
)
from vault.app.models.notes import AuditContext, DEFAULT_RETENTION_DAYS, SHORT_RETENTION_DAYS
from vault.app.services.timestamps import format_timestamp, get_utc_timestamp, parse_timestamp, utc_now
from vault.app.services.uuid7 import generate_uuid7

logger = get_logger("compliance")

# Templates whose notes need a recorded, active consent before creation.
HIGH_SENSITIVITY_TEMPLATES = frozenset(
    {
        "ramq_progress_note",
        "cnesst_work_injury",
        "saaq_accident_report",
        "mental_health_assessment",
        "substance_abuse_treatment",
        "genetic_information",
        "reproductive_health",
    }
)

# Rights requests must be answered within 30 days.
DATA_SUBJECT_RESPONSE_DAYS = 30

# Incidents at these levels must be reported to the privacy regulator.
NOTIFIABLE_SEVERITIES = frozenset({BreachSeverity.HIGH, BreachSeverity.CRITICAL})

ContextLike = Union[AuditContext, Mapping[str, Any], None]


def map_event(
    event: ComplianceEvent,
) -> Tuple[Optional[str], Optional[str], ResourceType, str, str, bool]:
    """
    Map an event to its audit columns.

    Returns:
        (practitioner_id, client_id, resource_type, resource_id, action, phi_accessed)

    Raises:
        TypeError: for an event class with no mapping
    """
    if isinstance(event, NoteCreated):
        return event.practitioner_id, event.client_id, ResourceType.MEDICAL_NOTE, event.note_id, "create", True
    if isinstance(event, NoteAccessed):
        return event.practitioner_id, None, ResourceType.MEDICAL_NOTE, event.note_id, "read", True
    if isinstance(event, NoteUpdated):
        return event.practitioner_id, None, ResourceType.MEDICAL_NOTE, event.note_id, "update", True
    if isinstance(event, NoteDeleted):
        return event.practitioner_id, None, ResourceType.MEDICAL_NOTE, event.note_id, "delete", True
    if isinstance(event, ConsentRecorded):
        return None, event.client_id, ResourceType.CONSENT, event.consent_id, "create", False
    if isinstance(event, ConsentWithdrawn):
        return None, event.client_id, ResourceType.CONSENT, event.consent_id, "update", False
    if isinstance(event, DataSubjectRequest):
        return None, event.client_id, ResourceType.DATA_SUBJECT_REQUEST, event.request_id, "create", False
    if isinstance(event, BreachDetected):
        return None, None, ResourceType.SECURITY_BREACH, event.breach_id, "create", True
    if isinstance(event, DataDeidentified):
        return None, None, ResourceType.DEIDENTIFIED_DATA, event.original_id, "transform", True
    if isinstance(event, AuditTrailAccessed):
        return event.accessor_id, None, ResourceType.AUDIT_TRAIL, event.target_resource, "read", True
    raise TypeError(f"Unmapped compliance event: {type(event).__name__}")


def retention_days_for(resource_type: ResourceType, phi_accessed: bool) -> int:
    if resource_type == ResourceType.MEDICAL_NOTE or phi_accessed:
        return DEFAULT_RETENTION_DAYS
    return SHORT_RETENTION_DAYS


def retention_bucket(days: int) -> str:
    if days >= 2555:
        return "7_years"
    if days >= 365:
        return "1_year"
    return "short_term"


def _context_fields(context: ContextLike) -> Dict[str, Optional[str]]:
    if context is None:
        return {"ip_address": None, "user_agent": None, "session_id": None}
    if isinstance(context, AuditContext):
        return context.model_dump(include={"ip_address", "user_agent", "session_id"})
    return {
        "ip_address": context.get("ip_address"),
        "user_agent": context.get("user_agent"),
        "session_id": context.get("session_id"),
    }


def _row_to_log(row: sqlite3.Row) -> ComplianceAuditLog:
    data = dict(row)
    data["compliant"] = bool(data["compliant"])
    data["phi_accessed"] = bool(data["phi_accessed"])
    return ComplianceAuditLog(**data)


class ComplianceTracker:
    """Compliance event log and registries, backed by the vault database."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = get_db_path(db_path)

    def initialize(self) -> "ComplianceTracker":
        ensure_schema(self.db_path)
        return self

    # ------------------------------------------------------------------ #
    # Event logging                                                       #
    # ------------------------------------------------------------------ #

    def log_event(
        self,
        event: ComplianceEvent,
        context: ContextLike = None,
        conn: Optional[sqlite3.Connection] = None,
    ) -> str:
        """
        Persist one compliance event and return its audit ID.

        When ``conn`` is given the insert joins the caller's open transaction
        (the record store uses this so a note write and its compliance event
        commit or roll back together).
        """
        practitioner_id, client_id, resource_type, resource_id, action, phi = map_event(event)
        audit_id = generate_uuid7()
        ctx = _context_fields(context)
        # A detected breach is by definition a compliance violation.
        compliant = not isinstance(event, BreachDetected)

        params = (
            audit_id,
            get_utc_timestamp(),
            event.event_type.value,
            event.model_dump_json(),
            practitioner_id,
            client_id,
            resource_type.value,
            resource_id,
            action,
            ctx["ip_address"],
            ctx["user_agent"],
            ctx["session_id"],
            int(compliant),
            int(phi),
            retention_days_for(resource_type, phi),
        )

        if conn is not None:
            self._insert_event(conn, params)
        else:
            with transaction(self.db_path) as own_conn:
                self._insert_event(own_conn, params)

        logger.info(
            "compliance_event_logged",
            audit_id=audit_id,
            event_type=event.event_type.value,
            resource_type=resource_type.value,
        )
        return audit_id

    @staticmethod
    def _insert_event(conn: sqlite3.Connection, params: tuple) -> None:
        conn.execute(
            """
            INSERT INTO compliance_audit_logs (
                id, timestamp, event_type, event_data, practitioner_id,
                client_id, resource_type, resource_id, action, ip_address,
                user_agent, session_id, compliant, phi_accessed,
                retention_period_days
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            params,
        )

    # ------------------------------------------------------------------ #
    # Queries                                                             #
    # ------------------------------------------------------------------ #

    def get_audit_trail(
        self, resource_type: Union[ResourceType, str], resource_id: str, limit: int = 100
    ) -> List[ComplianceAuditLog]:
        """Events for one resource, newest first."""
        resource_type = ResourceType(resource_type)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT * FROM compliance_audit_logs
                WHERE resource_type = ? AND resource_id = ?
                ORDER BY timestamp DESC, rowid DESC
                LIMIT ?
                """,
                (resource_type.value, resource_id, limit),
            )
            return [_row_to_log(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def generate_compliance_report(self, start: datetime, end: datetime) -> ComplianceReport:
        """
        Aggregate counts for events with ``start <= timestamp <= end``.
        Naive datetimes are taken as UTC.
        """
        period = (format_timestamp(start), format_timestamp(end))
        if period[1] < period[0]:
            raise ValueError("Report end precedes start")

        conn = get_connection(self.db_path)
        try:
            event_summary = {
                row["event_type"]: row["count"]
                for row in conn.execute(
                    """
                    SELECT event_type, COUNT(*) AS count
                    FROM compliance_audit_logs
                    WHERE timestamp BETWEEN ? AND ?
                    GROUP BY event_type
                    """,
                    period,
                )
            }
            phi_access_count = conn.execute(
                """
                SELECT COUNT(*) FROM compliance_audit_logs
                WHERE phi_accessed = 1 AND timestamp BETWEEN ? AND ?
                """,
                period,
            ).fetchone()[0]
            violations = conn.execute(
                """
                SELECT COUNT(*) FROM compliance_audit_logs
                WHERE compliant = 0 AND timestamp BETWEEN ? AND ?
                """,
                period,
            ).fetchone()[0]
            retention_summary: Dict[str, int] = {}
            for row in conn.execute(
                """
                SELECT retention_period_days, COUNT(*) AS count
                FROM compliance_audit_logs
                WHERE timestamp BETWEEN ? AND ?
                GROUP BY retention_period_days
                """,
                period,
            ):
                bucket = retention_bucket(row["retention_period_days"])
                retention_summary[bucket] = retention_summary.get(bucket, 0) + row["count"]
        finally:
            conn.close()

        return ComplianceReport(
            report_period_start=period[0],
            report_period_end=period[1],
            generated_at=get_utc_timestamp(),
            event_summary=event_summary,
            phi_access_count=phi_access_count,
            compliance_violations=violations,
            retention_summary=retention_summary,
        )

    # ------------------------------------------------------------------ #
    # Note-creation validation                                            #
    # ------------------------------------------------------------------ #

    def validate_note_creation(
        self,
        practitioner_id: str,
        client_id: str,
        template_id: str,
        consent_id: Optional[str] = None,
    ) -> ComplianceValidationResult:
        """
        Check whether a practitioner may create a note of this template for
        this client. Never raises for a failed rule; the caller decides.
        """
        violations: List[str] = []
        warnings: List[str] = []
        recommendations: List[str] = []

        if template_id in HIGH_SENSITIVITY_TEMPLATES:
            if not consent_id:
                violations.append("Explicit consent required for this type of medical note")
            elif not self._consent_is_valid(consent_id, client_id):
                violations.append("Provided consent is invalid or expired")
            warnings.append(
                "Consider using a de-identified template to minimize personal data collection"
            )
            recommendations.append(
                "Review data collection to ensure only necessary information is captured"
            )

        if not self._practitioner_is_authorized(practitioner_id):
            violations.append("Practitioner lacks a currently valid professional licence")
            recommendations.append("Register or renew the practitioner's licence before charting")

        return ComplianceValidationResult(
            is_compliant=not violations,
            violations=violations,
            warnings=warnings,
            recommendations=recommendations,
        )

    def _consent_is_valid(self, consent_id: str, client_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT expiry_date FROM consent_records
                WHERE id = ? AND client_id = ? AND status = 'active'
                """,
                (consent_id, client_id),
            ).fetchone()
        finally:
            conn.close()

        if row is None:
            return False
        expiry = parse_timestamp(row["expiry_date"])
        return expiry is None or expiry > utc_now()

    def _practitioner_is_authorized(self, practitioner_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT license_number, license_expiry FROM professionals WHERE id = ?",
                (practitioner_id,),
            ).fetchone()
        finally:
            conn.close()

        if row is None or not row["license_number"]:
            return False
        expiry = parse_timestamp(row["license_expiry"])
        return expiry is not None and expiry > utc_now()

    # ------------------------------------------------------------------ #
    # Registries                                                          #
    # ------------------------------------------------------------------ #

    def register_professional(
        self,
        professional_id: str,
        license_number: Optional[str],
        license_expiry: Optional[datetime],
        full_name: Optional[str] = None,
        professional_order: Optional[str] = None,
    ) -> None:
        """Insert or replace a practitioner's licence record."""
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO professionals (
                    id, full_name, professional_order, license_number,
                    license_expiry, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    full_name = excluded.full_name,
                    professional_order = excluded.professional_order,
                    license_number = excluded.license_number,
                    license_expiry = excluded.license_expiry
                """,
                (
                    professional_id,
                    full_name,
                    professional_order,
                    license_number,
                    format_timestamp(license_expiry) if license_expiry else None,
                    get_utc_timestamp(),
                ),
            )

    def record_consent(
        self,
        client_id: str,
        consent_type: str,
        data_types: Optional[List[str]] = None,
        expiry_date: Optional[datetime] = None,
        consent_id: Optional[str] = None,
        context: ContextLike = None,
    ) -> str:
        """Record an active consent and log ``ConsentRecorded``."""
        consent_id = consent_id or generate_uuid7()
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO consent_records (
                    id, client_id, consent_type, status, granted_at, expiry_date
                ) VALUES (?, ?, ?, 'active', ?, ?)
                """,
                (
                    consent_id,
                    client_id,
                    consent_type,
                    get_utc_timestamp(),
                    format_timestamp(expiry_date) if expiry_date else None,
                ),
            )
            self.log_event(
                ConsentRecorded(
                    consent_id=consent_id,
                    client_id=client_id,
                    data_types=list(data_types or []),
                ),
                context,
                conn=conn,
            )
        return consent_id

    def withdraw_consent(self, consent_id: str, client_id: str, context: ContextLike = None) -> bool:
        """Mark an active consent withdrawn. Returns False if none matched."""
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE consent_records
                SET status = 'withdrawn', withdrawn_at = ?
                WHERE id = ? AND client_id = ? AND status = 'active'
                """,
                (get_utc_timestamp(), consent_id, client_id),
            )
            if cursor.rowcount == 0:
                return False
            self.log_event(
                ConsentWithdrawn(consent_id=consent_id, client_id=client_id),
                context,
                conn=conn,
            )
        return True

    # ------------------------------------------------------------------ #
    # Rights requests and incidents                                       #
    # ------------------------------------------------------------------ #

    def open_data_subject_request(
        self,
        client_id: str,
        request_type: Union[DataSubjectRight, str],
        context: ContextLike = None,
    ) -> DataSubjectRequestRecord:
        """
        Register a client's access/rectification/erasure/... request and log
        ``DataSubjectRequest``. The response is due within 30 days.
        """
        requested_at = utc_now()
        record = DataSubjectRequestRecord(
            id=generate_uuid7(),
            client_id=client_id,
            request_type=DataSubjectRight(request_type),
            requested_at=format_timestamp(requested_at),
            due_date=format_timestamp(requested_at + timedelta(days=DATA_SUBJECT_RESPONSE_DAYS)),
        )
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO data_subject_requests (
                    id, client_id, request_type, status, requested_at, due_date
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.client_id,
                    record.request_type.value,
                    record.status,
                    record.requested_at,
                    record.due_date,
                ),
            )
            self.log_event(
                DataSubjectRequest(
                    request_id=record.id,
                    client_id=client_id,
                    request_type=record.request_type.value,
                ),
                context,
                conn=conn,
            )

        logger.info(
            "data_subject_request_opened",
            request_id=record.id,
            request_type=record.request_type.value,
        )
        return record

    def report_breach(
        self,
        severity: Union[BreachSeverity, str],
        affected_clients: Optional[List[str]] = None,
        context: ContextLike = None,
        breach_type: str = "unspecified",
        description: Optional[str] = None,
    ) -> BreachIncident:
        """
        Record a security incident and log ``BreachDetected``, which reports
        count as a compliance violation.
        """
        severity = BreachSeverity(severity)
        incident = BreachIncident(
            id=generate_uuid7(),
            breach_type=breach_type,
            severity=severity,
            description=description,
            affected_clients=list(affected_clients or []),
            detected_at=get_utc_timestamp(),
            regulator_notification_required=severity in NOTIFIABLE_SEVERITIES,
        )
        with transaction(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO security_incidents (
                    id, breach_type, severity, description, affected_clients,
                    detected_at, incident_status, regulator_notification_required
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    incident.id,
                    incident.breach_type,
                    severity.value,
                    incident.description,
                    json.dumps(incident.affected_clients),
                    incident.detected_at,
                    incident.incident_status,
                    int(incident.regulator_notification_required),
                ),
            )
            self.log_event(
                BreachDetected(
                    breach_id=incident.id,
                    severity=severity.value,
                    affected_clients=incident.affected_clients,
                ),
                context,
                conn=conn,
            )

        logger.warning(
            "security_breach_reported",
            breach_id=incident.id,
            severity=severity.value,
            affected=len(incident.affected_clients),
            notification_required=incident.regulator_notification_required,
        )
        return incident

    def purge_expired(self, as_of: Optional[datetime] = None) -> int:
        """Delete events whose retention period has fully elapsed."""
        as_of = as_of or utc_now()
        with transaction(self.db_path) as conn:
            expired = [
                row["id"]
                for row in conn.execute(
                    "SELECT id, timestamp, retention_period_days FROM compliance_audit_logs"
                )
                if parse_timestamp(row["timestamp"])
                + timedelta(days=row["retention_period_days"])
                <= as_of
            ]
            conn.executemany(
                "DELETE FROM compliance_audit_logs WHERE id = ?",
                [(audit_id,) for audit_id in expired],
            )

        if expired:
            logger.info("compliance_events_purged", count=len(expired))
        return len(expired)
