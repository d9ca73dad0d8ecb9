"""
Offline sync endpoints.

Security Model:
- clinician triggers sync and resolves conflicts
- conflict listings include decrypted local and remote versions, so they
  require the same role as a note read

Concurrency:
- handlers that call the remote peer are plain functions and run in
  FastAPI's threadpool, off the event loop
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request

from vault.app.models.requests import ResolveConflictRequest, SyncToggleRequest
from vault.app.models.sync import ResolutionStrategy, SyncConflict, SyncMetadata, SyncResult
from vault.app.security.auth import Identity, require_role
from vault.app.security.rate_limit import get_limiter
from vault.app.services.registry import get_services

router = APIRouter(prefix="/v1/sync", tags=["sync"])

limiter = get_limiter()


@router.post("")
@limiter.limit("6/minute")
def trigger_sync(
    request: Request,
    identity: Identity = Depends(require_role("clinician")),
) -> SyncResult:
    """Run one sync cycle now. 409 if one is already running or sync is off."""
    return get_services().coordinator.perform_sync()


@router.get("/status")
async def sync_status(
    identity: Identity = Depends(require_role("clinician")),
) -> SyncMetadata:
    return get_services().coordinator.get_sync_status()


@router.post("/enabled")
async def set_sync_enabled(
    req_body: SyncToggleRequest,
    identity: Identity = Depends(require_role("admin")),
) -> Dict[str, Any]:
    get_services().coordinator.set_sync_enabled(req_body.enabled)
    return {"sync_enabled": req_body.enabled}


@router.post("/notes/{note_id}")
@limiter.limit("30/minute")
def force_sync_note(
    request: Request,
    note_id: str,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """Upload one note immediately, including ``Local`` notes."""
    outcome = get_services().coordinator.force_sync_note(note_id)
    return {"note_id": note_id, "outcome": outcome}


@router.get("/conflicts")
async def list_conflicts(
    identity: Identity = Depends(require_role("clinician")),
) -> List[SyncConflict]:
    return get_services().coordinator.list_conflicts()


@router.post("/conflicts/{note_id}/resolve")
async def resolve_conflict(
    note_id: str,
    req_body: ResolveConflictRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """
    Resolve one conflict.

    ``manual_review`` writes the supplied ``content``; ``use_local`` and
    ``use_remote`` keep one side. The note becomes ``Pending`` (``Synced``
    for ``use_remote``).
    """
    coordinator = get_services().coordinator

    if req_body.strategy == ResolutionStrategy.MANUAL_REVIEW:
        if req_body.content is None:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "content_required",
                    "message": "Manual resolution requires explicit content",
                },
            )
        coordinator.resolve_conflict_manually(note_id, req_body.content, identity.sub)
        return {"note_id": note_id, "resolved": True, "strategy": req_body.strategy.value}

    if req_body.strategy == ResolutionStrategy.MERGE:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "unsupported_strategy",
                "message": "Merge is available to embedded callers only",
            },
        )

    resolved = coordinator.resolve_conflict(note_id, req_body.strategy, identity.sub)
    return {"note_id": note_id, "resolved": resolved, "strategy": req_body.strategy.value}
