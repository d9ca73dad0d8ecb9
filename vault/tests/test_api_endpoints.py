"""
Tests for the vault HTTP API.

Each test gets a fresh database and an in-memory sync peer through
``reset_services``.
"""

import asyncio
import time
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient

from vault.app.db.migrate import ensure_schema
from vault.app.main import app
from vault.app.services.record_store import RULE_MISSING_CONSENT
from vault.app.services.registry import reset_services
from vault.app.services.remote_store import InMemoryDocumentStore
from vault.app.services.timestamps import utc_now
from vault.tests.test_helpers import (
    TEST_PASSPHRASE,
    create_admin_headers,
    create_auditor_headers,
    create_clinician_headers,
)


@pytest.fixture(scope="function")
def services(tmp_path):
    services = reset_services(tmp_path / "api.db", remote=InMemoryDocumentStore())
    ensure_schema(services.db_path)
    yield services
    services.shutdown()


@pytest.fixture(scope="function")
def client(services):
    return TestClient(app)


@pytest.fixture(scope="function")
def initialized(client):
    response = client.post(
        "/v1/storage/initialize",
        json={"passphrase": TEST_PASSPHRASE},
        headers=create_admin_headers(),
    )
    assert response.status_code == 200
    return client


def _note_body(**overrides):
    body = {
        "patient_id": "patient-001",
        "template_type": "progress_note",
        "content": "Patient reports improved sleep.",
        "consent_obtained": True,
        "compliance_metadata": {
            "explicit_consent": True,
            "data_minimization": True,
            "retention_period_days": 2555,
        },
    }
    body.update(overrides)
    return body


def _create_note(client, **overrides):
    response = client.post("/v1/notes", json=_note_body(**overrides), headers=create_clinician_headers())
    assert response.status_code == 200
    return response.json()["note_id"]


# ---------------------------------------------------------------------------
# Health and auth
# ---------------------------------------------------------------------------


def test_health_endpoints(client):
    assert client.get("/healthz").json() == {"ok": True}

    response = client.get("/v1/health/status")
    assert response.status_code == 200
    assert response.json()["storage_initialized"] is False


def test_missing_token_is_rejected(client):
    response = client.get("/v1/storage/status")
    assert response.status_code in (401, 403)


def test_invalid_token_is_rejected(client):
    response = client.get("/v1/storage/status", headers={"Authorization": "Bearer not-a-jwt"})

    assert response.status_code == 401
    assert response.json()["error"] == "invalid_token"


def test_wrong_role_is_forbidden(initialized):
    response = initialized.get("/v1/audit", headers=create_clinician_headers())

    assert response.status_code == 403
    assert response.json()["error"] == "insufficient_permissions"


def test_initialize_requires_admin(client):
    response = client.post(
        "/v1/storage/initialize",
        json={"passphrase": TEST_PASSPHRASE},
        headers=create_clinician_headers(),
    )
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


def test_save_before_initialize_is_conflict(client):
    response = client.post("/v1/notes", json=_note_body(), headers=create_clinician_headers())

    assert response.status_code == 409
    assert response.json()["error"] == "store_not_initialized"


def test_note_lifecycle(initialized):
    client = initialized
    headers = create_clinician_headers("dr-roy")

    response = client.post("/v1/notes", json=_note_body(), headers=headers)
    assert response.status_code == 200
    created = response.json()
    assert created["version"] == 1
    assert created["sync_status"] == "pending"
    note_id = created["note_id"]

    response = client.get(f"/v1/notes/{note_id}", headers=headers)
    assert response.status_code == 200
    note = response.json()
    assert note["content"] == "Patient reports improved sleep."
    assert note["encrypted"] is True
    assert [entry["action"] for entry in note["compliance_metadata"]["audit_trail"]] == ["read", "create"]

    response = client.get("/v1/patients/patient-001/notes", headers=headers)
    assert response.status_code == 200
    assert response.json()["count"] == 1

    response = client.get("/v1/notes", params={"sync_status": "pending"}, headers=headers)
    assert response.json()["note_ids"] == [note_id]

    response = client.delete(f"/v1/notes/{note_id}", headers=headers)
    assert response.json() == {"note_id": note_id, "deleted": True}

    assert client.get(f"/v1/notes/{note_id}", headers=headers).status_code == 404


def test_missing_note_is_404(initialized):
    response = initialized.get("/v1/notes/unknown", headers=create_clinician_headers())

    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_noncompliant_note_names_rule(initialized):
    response = initialized.post(
        "/v1/notes", json=_note_body(consent_obtained=False), headers=create_clinician_headers()
    )

    assert response.status_code == 422
    body = response.json()
    assert body["error"] == "compliance_violation"
    assert body["rule"] == RULE_MISSING_CONSENT


def test_validation_errors_do_not_echo_content(initialized):
    body = _note_body(content="SECRET-CONTENT")
    del body["patient_id"]

    response = initialized.post("/v1/notes", json=body, headers=create_clinician_headers())

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"
    assert "SECRET-CONTENT" not in response.text


def test_validate_and_defaults(initialized):
    headers = create_clinician_headers()

    response = initialized.post(
        "/v1/notes/validate",
        json=_note_body(consent_obtained=False),
        headers=headers,
    )
    assert response.json() == {"is_compliant": False, "violations": [RULE_MISSING_CONSENT]}

    response = initialized.post(
        "/v1/notes/defaults",
        json={"patient_id": "patient-001", "template_type": "intake"},
        headers=headers,
    )
    assert response.status_code == 200
    assert response.json()["sync_status"] == "local"


def test_audit_log_for_auditor(initialized):
    note_id = _create_note(initialized)

    response = initialized.get("/v1/audit", params={"note_id": note_id}, headers=create_auditor_headers())
    assert response.status_code == 200
    assert [entry["action"] for entry in response.json()] == ["create"]

    response = initialized.get("/v1/audit/verify", headers=create_auditor_headers())
    assert response.json()["valid"] is True


def test_storage_status(initialized):
    _create_note(initialized)

    response = initialized.get("/v1/storage/status", headers=create_clinician_headers())

    assert response.status_code == 200
    assert response.json()["initialized"] is True


# ---------------------------------------------------------------------------
# Compliance
# ---------------------------------------------------------------------------


def test_compliance_registry_and_report(initialized):
    response = initialized.post(
        "/v1/compliance/professionals",
        json={
            "professional_id": "dr-roy",
            "license_number": "OPQ-1",
            "license_expiry": (utc_now() + timedelta(days=30)).isoformat(),
        },
        headers=create_admin_headers(),
    )
    assert response.status_code == 200

    response = initialized.post(
        "/v1/compliance/consents",
        json={"client_id": "patient-001", "consent_type": "treatment"},
        headers=create_clinician_headers(),
    )
    consent_id = response.json()["consent_id"]

    response = initialized.post(
        "/v1/compliance/validate-creation",
        json={"client_id": "patient-001", "template_id": "mental_health_assessment", "consent_id": consent_id},
        headers=create_clinician_headers("dr-roy"),
    )
    assert response.json()["is_compliant"] is True

    response = initialized.post(
        f"/v1/compliance/consents/{consent_id}/withdraw",
        json={"client_id": "patient-001"},
        headers=create_clinician_headers(),
    )
    assert response.json()["status"] == "withdrawn"

    response = initialized.get(
        "/v1/compliance/report",
        params={"start": (utc_now() - timedelta(hours=1)).isoformat()},
        headers=create_auditor_headers(),
    )
    assert response.status_code == 200
    summary = response.json()["event_summary"]
    assert summary["consent_recorded"] == 1
    assert summary["consent_withdrawn"] == 1


def test_report_with_inverted_period(initialized):
    response = initialized.get(
        "/v1/compliance/report",
        params={
            "start": utc_now().isoformat(),
            "end": (utc_now() - timedelta(days=1)).isoformat(),
        },
        headers=create_auditor_headers(),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "invalid_period"


def test_rights_request_and_breach_reporting(initialized):
    start = (utc_now() - timedelta(hours=1)).isoformat()

    response = initialized.post(
        "/v1/compliance/data-subject-requests",
        json={"client_id": "patient-001", "request_type": "access"},
        headers=create_clinician_headers(),
    )
    assert response.status_code == 200
    request_record = response.json()
    assert request_record["request_type"] == "access"
    assert request_record["status"] == "pending"
    assert request_record["due_date"] > request_record["requested_at"]

    breach = {"severity": "critical", "breach_type": "lost_device", "affected_clients": ["patient-001"]}
    response = initialized.post("/v1/compliance/breaches", json=breach, headers=create_clinician_headers())
    assert response.status_code == 403

    response = initialized.post("/v1/compliance/breaches", json=breach, headers=create_admin_headers())
    assert response.status_code == 200
    incident = response.json()
    assert incident["regulator_notification_required"] is True
    assert incident["affected_clients"] == ["patient-001"]

    response = initialized.get(
        "/v1/compliance/report", params={"start": start}, headers=create_auditor_headers()
    )
    report = response.json()
    assert report["event_summary"]["data_subject_request"] == 1
    assert report["event_summary"]["breach_detected"] == 1
    assert report["compliance_violations"] == 1


def test_rights_request_with_unknown_type_is_rejected(initialized):
    response = initialized.post(
        "/v1/compliance/data-subject-requests",
        json={"client_id": "patient-001", "request_type": "forget-me-maybe"},
        headers=create_clinician_headers(),
    )

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


# ---------------------------------------------------------------------------
# De-identification
# ---------------------------------------------------------------------------


def test_deidentify_logs_hashes_only(client, services):
    text = "Seen today: Marie Tremblay, email marie@example.com"

    response = client.post(
        "/v1/deidentify", json={"text": text, "level": "federal"}, headers=create_clinician_headers()
    )

    assert response.status_code == 200
    result = response.json()
    assert result["cleaned_text"] == "Seen today: [NAME_1], email [EMAIL_1]"

    [event] = services.tracker.get_audit_trail("deidentified_data", result["original_hash"])
    assert "Marie" not in event.event_data


def test_deidentify_verify(client):
    response = client.post(
        "/v1/deidentify/verify",
        json={"text": "call 514-555-1234", "level": "federal"},
        headers=create_clinician_headers(),
    )

    assert response.json() == {"compliant": False, "level": "federal", "remaining_categories": ["phone"]}


# ---------------------------------------------------------------------------
# Sync
# ---------------------------------------------------------------------------


def test_sync_uploads_pending_notes(initialized, services):
    note_id = _create_note(initialized)

    response = initialized.post("/v1/sync", headers=create_clinician_headers())

    assert response.status_code == 200
    assert response.json()["uploaded"] == 1
    assert services.remote.document_count(services.coordinator.collection) == 1

    status = initialized.get("/v1/sync/status", headers=create_clinician_headers()).json()
    assert status["pending_notes"] == []
    assert status["last_sync"] is not None

    response = initialized.post(f"/v1/sync/notes/{note_id}", headers=create_clinician_headers())
    assert response.json() == {"note_id": note_id, "outcome": "skipped"}


def test_sync_disabled_is_conflict(initialized):
    response = initialized.post(
        "/v1/sync/enabled", json={"enabled": False}, headers=create_admin_headers()
    )
    assert response.json() == {"sync_enabled": False}

    response = initialized.post("/v1/sync", headers=create_clinician_headers())
    assert response.status_code == 409
    assert response.json()["error"] == "sync_error"


def test_conflict_listing_and_resolution(initialized):
    headers = create_clinician_headers()
    note_id = _create_note(
        initialized,
        compliance_metadata={"explicit_consent": False, "data_minimization": True, "retention_period_days": 2555},
    )
    initialized.post("/v1/sync", headers=headers)

    conflicts = initialized.get("/v1/sync/conflicts", headers=headers).json()
    assert [c["note_id"] for c in conflicts] == [note_id]
    assert conflicts[0]["kind"] == "compliance_blocked"

    response = initialized.post(
        f"/v1/sync/conflicts/{note_id}/resolve", json={"strategy": "manual_review"}, headers=headers
    )
    assert response.status_code == 400
    assert response.json()["error"] == "content_required"

    response = initialized.post(
        f"/v1/sync/conflicts/{note_id}/resolve", json={"strategy": "merge"}, headers=headers
    )
    assert response.status_code == 400

    response = initialized.post(
        f"/v1/sync/conflicts/{note_id}/resolve",
        json={"strategy": "manual_review", "content": "reviewed text"},
        headers=headers,
    )
    assert response.json() == {"note_id": note_id, "resolved": True, "strategy": "manual_review"}
    assert initialized.get("/v1/sync/conflicts", headers=headers).json() == []

    note = initialized.get(f"/v1/notes/{note_id}", headers=headers).json()
    assert note["content"] == "reviewed text"
    assert note["sync_status"] == "pending"


def test_resolving_note_without_conflict_is_rejected(initialized):
    note_id = _create_note(initialized)

    response = initialized.post(
        f"/v1/sync/conflicts/{note_id}/resolve",
        json={"strategy": "use_local"},
        headers=create_clinician_headers(),
    )

    assert response.status_code == 409


class SlowRemote(InMemoryDocumentStore):
    """A peer whose document lookups take a full second."""

    delay_seconds = 1.0

    def get(self, collection, doc_id):
        time.sleep(self.delay_seconds)
        return super().get(collection, doc_id)


@pytest.fixture(scope="function")
def slow_services(tmp_path):
    services = reset_services(tmp_path / "slow.db", remote=SlowRemote())
    ensure_schema(services.db_path)
    yield services
    services.shutdown()


def test_reads_are_served_while_sync_waits_on_remote(slow_services):
    client = TestClient(app)
    client.post(
        "/v1/storage/initialize",
        json={"passphrase": TEST_PASSPHRASE},
        headers=create_admin_headers(),
    )
    note_id = _create_note(client)
    headers = create_clinician_headers()
    finished = {}

    async def run_sync(http):
        response = await http.post("/v1/sync", headers=headers)
        finished["sync"] = time.monotonic()
        return response

    async def read_note(http):
        await asyncio.sleep(0.1)
        response = await http.get(f"/v1/notes/{note_id}", headers=headers)
        finished["read"] = time.monotonic()
        return response

    async def scenario():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as http:
            return await asyncio.gather(run_sync(http), read_note(http))

    started = time.monotonic()
    sync_response, read_response = asyncio.run(scenario())

    assert sync_response.status_code == 200
    assert sync_response.json()["uploaded"] == 1
    assert read_response.status_code == 200
    assert read_response.json()["content"] == "Patient reports improved sleep."
    assert finished["read"] < finished["sync"]
    assert finished["read"] - started < SlowRemote.delay_seconds


def test_rate_limiter_is_shared_and_disabled_in_test_mode():
    from vault.app import main
    from vault.app.routes import sync
    from vault.app.security.rate_limit import get_limiter

    assert main.limiter is get_limiter()
    assert app.state.limiter is sync.limiter
    assert main.limiter.enabled is False
