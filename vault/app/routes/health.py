"""
Health check endpoints.
"""

from fastapi import APIRouter

from vault.app.services.registry import get_services

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """Basic liveness check."""
    return {"ok": True}


@router.get("/v1/health/status")
async def health_status():
    """Service status, including whether the store has been unlocked."""
    services = get_services()
    return {
        "status": "healthy",
        "service": "clinical-note-vault",
        "storage_initialized": services.store.is_initialized,
    }
