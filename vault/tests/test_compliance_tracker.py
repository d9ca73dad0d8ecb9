"""
Tests for the compliance audit tracker.
"""

import json
from datetime import timedelta

import pytest

from vault.app.db.migrate import get_connection
from vault.app.models.compliance import (
    AuditTrailAccessed,
    BreachDetected,
    BreachSeverity,
    ComplianceEvent,
    ConsentRecorded,
    DataDeidentified,
    DataSubjectRequest,
    DataSubjectRight,
    NoteAccessed,
    NoteCreated,
    ResourceType,
)
from vault.app.models.notes import AuditContext
from vault.app.services.compliance_tracker import map_event, retention_days_for
from vault.app.services.timestamps import parse_timestamp, utc_now


def test_log_event_maps_fields(tracker):
    audit_id = tracker.log_event(
        NoteCreated(note_id="note-1", practitioner_id="dr-roy", client_id="patient-1"),
        AuditContext(ip_address="10.0.0.5", session_id="sess-9", user_agent="pytest"),
    )

    [entry] = tracker.get_audit_trail(ResourceType.MEDICAL_NOTE, "note-1")

    assert entry.id == audit_id
    assert entry.event_type.value == "note_created"
    assert entry.practitioner_id == "dr-roy"
    assert entry.client_id == "patient-1"
    assert entry.action == "create"
    assert entry.phi_accessed is True
    assert entry.compliant is True
    assert entry.retention_period_days == 2555
    assert entry.ip_address == "10.0.0.5"
    assert entry.user_agent == "pytest"
    assert entry.session_id == "sess-9"


def test_context_may_be_a_mapping(tracker):
    tracker.log_event(
        NoteAccessed(note_id="note-1", practitioner_id="dr-roy"),
        {"ip_address": "192.168.1.20"},
    )

    [entry] = tracker.get_audit_trail("medical_note", "note-1")
    assert entry.ip_address == "192.168.1.20"
    assert entry.session_id is None


def test_event_mapping_table():
    assert map_event(ConsentRecorded(consent_id="c-1", client_id="p-1"))[2:] == (
        ResourceType.CONSENT, "c-1", "create", False,
    )
    assert map_event(DataSubjectRequest(request_id="r-1", client_id="p-1", request_type="access"))[2:] == (
        ResourceType.DATA_SUBJECT_REQUEST, "r-1", "create", False,
    )
    assert map_event(BreachDetected(breach_id="b-1", severity="high"))[2:] == (
        ResourceType.SECURITY_BREACH, "b-1", "create", True,
    )
    assert map_event(DataDeidentified(original_id="h-1", deidentified_id="h-2"))[2:] == (
        ResourceType.DEIDENTIFIED_DATA, "h-1", "transform", True,
    )
    assert map_event(AuditTrailAccessed(accessor_id="aud-1", target_resource="note-1"))[2:] == (
        ResourceType.AUDIT_TRAIL, "note-1", "read", True,
    )


def test_unmapped_event_is_rejected(tracker):
    class Unknown(ComplianceEvent):
        pass

    with pytest.raises(TypeError):
        map_event(Unknown())


def test_retention_policy():
    assert retention_days_for(ResourceType.MEDICAL_NOTE, False) == 2555
    assert retention_days_for(ResourceType.CONSENT, True) == 2555
    assert retention_days_for(ResourceType.CONSENT, False) == 365


def test_audit_trail_newest_first_with_limit(tracker):
    for _ in range(3):
        tracker.log_event(NoteAccessed(note_id="note-1", practitioner_id="dr-roy"))
    tracker.log_event(NoteAccessed(note_id="note-2", practitioner_id="dr-roy"))

    trail = tracker.get_audit_trail(ResourceType.MEDICAL_NOTE, "note-1", limit=2)

    assert len(trail) == 2
    assert trail[0].timestamp >= trail[1].timestamp
    assert all(entry.resource_id == "note-1" for entry in trail)


def test_compliance_report_counts(tracker):
    start = utc_now() - timedelta(minutes=1)
    tracker.log_event(NoteCreated(note_id="n-1", practitioner_id="dr-roy", client_id="p-1"))
    tracker.log_event(NoteAccessed(note_id="n-1", practitioner_id="dr-roy"))
    tracker.log_event(ConsentRecorded(consent_id="c-1", client_id="p-1"))
    tracker.log_event(BreachDetected(breach_id="b-1", severity="low"))

    report = tracker.generate_compliance_report(start, utc_now() + timedelta(minutes=1))

    assert report.event_summary == {
        "note_created": 1,
        "note_accessed": 1,
        "consent_recorded": 1,
        "breach_detected": 1,
    }
    assert report.phi_access_count == 3
    assert report.compliance_violations == 1
    assert report.retention_summary == {"7_years": 3, "1_year": 1}


def test_compliance_report_excludes_events_outside_period(tracker):
    tracker.log_event(NoteAccessed(note_id="n-1", practitioner_id="dr-roy"))

    report = tracker.generate_compliance_report(
        utc_now() - timedelta(days=2), utc_now() - timedelta(days=1)
    )

    assert report.event_summary == {}
    assert report.phi_access_count == 0


def test_compliance_report_rejects_inverted_period(tracker):
    with pytest.raises(ValueError):
        tracker.generate_compliance_report(utc_now(), utc_now() - timedelta(days=1))


# ---------------------------------------------------------------------------
# Note-creation validation
# ---------------------------------------------------------------------------


def _licensed(tracker, practitioner_id="dr-roy", days=365):
    tracker.register_professional(
        practitioner_id,
        license_number="OPQ-12345",
        license_expiry=utc_now() + timedelta(days=days),
        full_name="Dr. Roy",
        professional_order="OPQ",
    )


def test_validate_creation_for_licensed_practitioner(tracker):
    _licensed(tracker)

    result = tracker.validate_note_creation("dr-roy", "patient-1", "progress_note")

    assert result.is_compliant is True
    assert result.violations == []
    assert result.warnings == []


def test_validate_creation_rejects_unknown_or_expired_licence(tracker):
    unknown = tracker.validate_note_creation("nobody", "patient-1", "progress_note")
    assert unknown.is_compliant is False

    _licensed(tracker, "dr-expired", days=-1)
    expired = tracker.validate_note_creation("dr-expired", "patient-1", "progress_note")
    assert expired.is_compliant is False
    assert len(expired.violations) == 1


def test_high_sensitivity_template_requires_consent(tracker):
    _licensed(tracker)

    result = tracker.validate_note_creation("dr-roy", "patient-1", "mental_health_assessment")

    assert result.is_compliant is False
    assert result.violations == ["Explicit consent required for this type of medical note"]
    assert result.warnings
    assert result.recommendations


def test_high_sensitivity_template_with_active_consent(tracker):
    _licensed(tracker)
    consent_id = tracker.record_consent("patient-1", "treatment", data_types=["mental_health"])

    result = tracker.validate_note_creation(
        "dr-roy", "patient-1", "mental_health_assessment", consent_id=consent_id
    )

    assert result.is_compliant is True
    assert len(result.warnings) == 1


def test_consent_for_another_client_is_invalid(tracker):
    _licensed(tracker)
    consent_id = tracker.record_consent("patient-2", "treatment")

    result = tracker.validate_note_creation(
        "dr-roy", "patient-1", "genetic_information", consent_id=consent_id
    )

    assert result.violations == ["Provided consent is invalid or expired"]


def test_expired_consent_is_invalid(tracker):
    _licensed(tracker)
    consent_id = tracker.record_consent(
        "patient-1", "treatment", expiry_date=utc_now() - timedelta(days=1)
    )

    result = tracker.validate_note_creation(
        "dr-roy", "patient-1", "reproductive_health", consent_id=consent_id
    )

    assert result.is_compliant is False


def test_withdrawn_consent_is_invalid_and_logged(tracker):
    _licensed(tracker)
    consent_id = tracker.record_consent("patient-1", "treatment")

    assert tracker.withdraw_consent(consent_id, "patient-1") is True
    assert tracker.withdraw_consent(consent_id, "patient-1") is False

    result = tracker.validate_note_creation(
        "dr-roy", "patient-1", "substance_abuse_treatment", consent_id=consent_id
    )
    assert result.is_compliant is False

    events = tracker.get_audit_trail(ResourceType.CONSENT, consent_id)
    assert [event.event_type.value for event in events] == ["consent_withdrawn", "consent_recorded"]
    assert all(event.retention_period_days == 365 for event in events)


def test_purge_expired_removes_only_elapsed_entries(tracker):
    tracker.log_event(ConsentRecorded(consent_id="c-1", client_id="p-1"))
    tracker.log_event(NoteAccessed(note_id="n-1", practitioner_id="dr-roy"))

    assert tracker.purge_expired(utc_now()) == 0
    assert tracker.purge_expired(utc_now() + timedelta(days=400)) == 1
    assert tracker.get_audit_trail(ResourceType.CONSENT, "c-1") == []
    assert len(tracker.get_audit_trail(ResourceType.MEDICAL_NOTE, "n-1")) == 1


# ---------------------------------------------------------------------------
# Rights requests and incidents
# ---------------------------------------------------------------------------


def _rows(db_path, table):
    conn = get_connection(db_path)
    try:
        return [dict(row) for row in conn.execute(f"SELECT * FROM {table}")]
    finally:
        conn.close()


def test_data_subject_request_is_stored_and_logged(tracker, db_path):
    record = tracker.open_data_subject_request(
        "patient-1", "erasure", {"ip_address": "10.0.0.5"}
    )

    assert record.request_type == DataSubjectRight.ERASURE
    assert record.status == "pending"
    due = parse_timestamp(record.due_date) - parse_timestamp(record.requested_at)
    assert due == timedelta(days=30)

    [row] = _rows(db_path, "data_subject_requests")
    assert row["id"] == record.id
    assert row["client_id"] == "patient-1"
    assert row["request_type"] == "erasure"
    assert row["completed_at"] is None

    [event] = tracker.get_audit_trail(ResourceType.DATA_SUBJECT_REQUEST, record.id)
    assert event.event_type.value == "data_subject_request"
    assert event.client_id == "patient-1"
    assert event.ip_address == "10.0.0.5"
    assert event.retention_period_days == 365


def test_unknown_request_type_is_rejected(tracker, db_path):
    with pytest.raises(ValueError):
        tracker.open_data_subject_request("patient-1", "delete-everything")

    assert _rows(db_path, "data_subject_requests") == []


def test_request_row_rolls_back_when_event_cannot_be_logged(tracker, db_path, monkeypatch):
    def failing_log_event(*args, **kwargs):
        raise RuntimeError("audit log unavailable")

    monkeypatch.setattr(tracker, "log_event", failing_log_event)

    with pytest.raises(RuntimeError):
        tracker.open_data_subject_request("patient-1", "access")
    with pytest.raises(RuntimeError):
        tracker.report_breach("high", ["patient-1"])

    assert _rows(db_path, "data_subject_requests") == []
    assert _rows(db_path, "security_incidents") == []


@pytest.mark.parametrize(
    "severity, notifiable",
    [("low", False), ("medium", False), ("high", True), ("critical", True)],
)
def test_breach_notification_follows_severity(tracker, severity, notifiable):
    incident = tracker.report_breach(severity, ["patient-1"])

    assert incident.severity == BreachSeverity(severity)
    assert incident.regulator_notification_required is notifiable


def test_breach_is_stored_and_counted_as_violation(tracker, db_path):
    start = utc_now() - timedelta(minutes=1)
    tracker.log_event(NoteAccessed(note_id="n-1", practitioner_id="dr-roy"))

    incident = tracker.report_breach(
        "high",
        ["patient-1", "patient-2"],
        breach_type="lost_device",
        description="Unencrypted laptop reported missing",
    )

    [row] = _rows(db_path, "security_incidents")
    assert row["id"] == incident.id
    assert row["severity"] == "high"
    assert json.loads(row["affected_clients"]) == ["patient-1", "patient-2"]
    assert row["incident_status"] == "detected"
    assert row["regulator_notification_required"] == 1

    [event] = tracker.get_audit_trail(ResourceType.SECURITY_BREACH, incident.id)
    assert event.compliant is False
    assert event.phi_accessed is True

    report = tracker.generate_compliance_report(start, utc_now() + timedelta(minutes=1))
    assert report.event_summary == {"note_accessed": 1, "breach_detected": 1}
    assert report.compliance_violations == 1
