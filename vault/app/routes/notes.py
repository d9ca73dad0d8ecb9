"""
Note storage endpoints.

Security Model:
- JWT authentication required; the audit actor is the token subject
- clinician reads and writes notes, auditor reads the access log
- Responses never echo stored content except on an explicit note read
- Rate limiting applies
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from vault.app.logging_config import get_logger
from vault.app.models.notes import AuditEntry, ClinicalNote, SyncStatus
from vault.app.models.requests import InitializeStorageRequest, NoteDefaultsRequest, NoteInput
from vault.app.security.auth import Identity, audit_context, require_role
from vault.app.security.rate_limit import get_limiter
from vault.app.services.record_store import create_note_with_defaults, validate_note_compliance
from vault.app.services.registry import get_services

logger = get_logger("routes.notes")

router = APIRouter(prefix="/v1", tags=["notes"])

limiter = get_limiter()


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=404,
        detail={"error": "not_found", "message": "Note not found"},
    )


# ---------------------------------------------------------------------------
# Storage lifecycle
# ---------------------------------------------------------------------------


@router.post("/storage/initialize")
@limiter.limit("10/minute")
async def initialize_storage(
    request: Request,
    req_body: InitializeStorageRequest,
    identity: Identity = Depends(require_role("admin")),
) -> Dict[str, Any]:
    """
    Derive the store key from a passphrase and bring the schema up to date.

    Re-initializing with a different passphrase switches keys; notes written
    under the old key then fail with ``key identifier mismatch`` on read.
    """
    services = get_services()
    services.store.initialize(req_body.passphrase)
    services.tracker.initialize()
    return {"initialized": True, "key_id": services.store.key_id}


@router.get("/storage/status")
async def storage_status(
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    return get_services().store.status()


# ---------------------------------------------------------------------------
# Notes
# ---------------------------------------------------------------------------


@router.post("/notes")
@limiter.limit("60/minute")
async def save_note(
    request: Request,
    req_body: NoteInput,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """
    Encrypt and store a note. New notes and local edits are queued for sync.

    Returns 422 naming the failed rule when the note lacks consent, has
    data minimization unset or has no retention period.
    """
    note = ClinicalNote(**req_body.model_dump(exclude={"local_edit"}))
    store = get_services().store
    note_id = store.save_note(
        note,
        actor_id=identity.sub,
        context=audit_context(request, identity),
        local_edit=req_body.local_edit,
    )
    record = store.get_record(note_id)
    return {
        "note_id": note_id,
        "version": record.version if record else None,
        "sync_status": record.sync_status.value if record else None,
    }


@router.post("/notes/defaults")
async def note_defaults(
    req_body: NoteDefaultsRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> ClinicalNote:
    """An unsaved note with conservative compliance defaults."""
    return create_note_with_defaults(req_body.patient_id, req_body.template_type)


@router.post("/notes/validate")
async def validate_note(
    note: ClinicalNote,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """Every rule the note currently fails. Nothing is stored."""
    violations = validate_note_compliance(note)
    return {"is_compliant": not violations, "violations": violations}


@router.get("/notes/{note_id}")
@limiter.limit("100/minute")
async def get_note(
    request: Request,
    note_id: str,
    identity: Identity = Depends(require_role("clinician")),
) -> ClinicalNote:
    """Decrypt one note. The read is recorded in the access log."""
    note = get_services().store.get_note(
        note_id, actor_id=identity.sub, context=audit_context(request, identity)
    )
    if note is None:
        raise _not_found()
    return note


@router.delete("/notes/{note_id}")
@limiter.limit("30/minute")
async def delete_note(
    request: Request,
    note_id: str,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    deleted = get_services().store.delete_note(
        note_id, actor_id=identity.sub, context=audit_context(request, identity)
    )
    if not deleted:
        raise _not_found()
    return {"note_id": note_id, "deleted": True}


@router.post("/notes/{note_id}/withdraw-consent")
async def withdraw_note_consent(
    request: Request,
    note_id: str,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """Clear the consent flags on a note; it will no longer be uploaded."""
    withdrawn = get_services().store.withdraw_consent(
        note_id, actor_id=identity.sub, context=audit_context(request, identity)
    )
    if not withdrawn:
        raise _not_found()
    return {"note_id": note_id, "consent_obtained": False}


@router.get("/patients/{patient_id}/notes")
@limiter.limit("60/minute")
async def list_patient_notes(
    request: Request,
    patient_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """One page of a patient's notes, newest first."""
    notes = get_services().store.list_notes_for_patient(
        patient_id,
        actor_id=identity.sub,
        limit=limit,
        offset=offset,
        context=audit_context(request, identity),
    )
    return {"notes": notes, "count": len(notes), "limit": limit, "offset": offset}


@router.get("/notes")
async def list_notes_by_status(
    sync_status: SyncStatus,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """IDs only; no content is decrypted."""
    note_ids = get_services().store.list_notes_by_sync_status(sync_status)
    return {"sync_status": sync_status.value, "note_ids": note_ids}


# ---------------------------------------------------------------------------
# Access log
# ---------------------------------------------------------------------------


@router.get("/audit")
@limiter.limit("60/minute")
async def get_audit_trail(
    request: Request,
    note_id: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    identity: Identity = Depends(require_role("auditor")),
) -> List[AuditEntry]:
    """
    Access log entries for one note, or the most recent entries overall.
    Reading the log is itself logged.
    """
    return get_services().store.get_audit_trail(
        note_id,
        actor_id=identity.sub,
        context=audit_context(request, identity),
        limit=limit,
    )


@router.get("/audit/verify")
async def verify_audit_chain(
    identity: Identity = Depends(require_role("auditor")),
) -> Dict[str, Any]:
    """Recompute the access log hash chain and report any breaks."""
    result = get_services().store.verify_audit_chain()
    if not result["valid"]:
        logger.warning("audit_chain_invalid", errors=len(result["errors"]))
    return result
