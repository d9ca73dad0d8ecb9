"""
De-identification endpoints.

The engine is pure; these routes add authentication and log a
``DataDeidentified`` compliance event that carries hashes of the source and
cleaned text, never the text itself.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Request

from vault.app.logging_config import get_logger
from vault.app.models.compliance import DataDeidentified
from vault.app.models.deidentification import DeidentificationResult
from vault.app.models.requests import DeidentifyRequest
from vault.app.security.auth import Identity, audit_context, require_role
from vault.app.security.rate_limit import get_limiter
from vault.app.services.hashing import sha256_text
from vault.app.services.registry import get_services

logger = get_logger("routes.deidentify")

router = APIRouter(prefix="/v1/deidentify", tags=["deidentification"])

limiter = get_limiter()


@router.post("")
@limiter.limit("60/minute")
async def deidentify_text(
    request: Request,
    req_body: DeidentifyRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> DeidentificationResult:
    services = get_services()
    result = services.engine.deidentify(req_body.text, req_body.level)

    services.tracker.log_event(
        DataDeidentified(
            original_id=result.original_hash,
            deidentified_id=sha256_text(result.cleaned_text),
        ),
        audit_context(request, identity),
    )
    logger.info(
        "text_deidentified",
        level=result.compliance_level.value,
        removed=len(result.removed_entities),
    )
    return result


@router.post("/verify")
async def verify_deidentified(
    req_body: DeidentifyRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    """Whether any identifier targeted by the level still appears in the text."""
    engine = get_services().engine
    return {
        "compliant": engine.verify_compliance(req_body.text, req_body.level),
        "level": req_body.level.value,
        "remaining_categories": [
            category.value
            for category in engine.remaining_categories(req_body.text, req_body.level)
        ],
    }
