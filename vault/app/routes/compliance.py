"""
Compliance audit endpoints: creation checks, event trails, reports and the
professional/consent registries.

Security Model:
- auditor reads trails and reports
- clinician validates note creation and records consents
- admin maintains the professional registry and reports breaches
- clinician opens data-subject requests on a client's behalf
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from vault.app.models.compliance import (
    BreachIncident,
    ComplianceAuditLog,
    ComplianceReport,
    ComplianceValidationResult,
    DataSubjectRequestRecord,
    ResourceType,
)
from vault.app.models.requests import (
    DataSubjectRequestInput,
    RecordConsentRequest,
    RegisterProfessionalRequest,
    ReportBreachRequest,
    ValidateCreationRequest,
    WithdrawRegisteredConsentRequest,
)
from vault.app.security.auth import Identity, audit_context, require_role
from vault.app.security.rate_limit import get_limiter
from vault.app.services.registry import get_services
from vault.app.services.timestamps import utc_now

router = APIRouter(prefix="/v1/compliance", tags=["compliance"])

limiter = get_limiter()


@router.post("/validate-creation")
async def validate_note_creation(
    req_body: ValidateCreationRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> ComplianceValidationResult:
    """Licence and consent checks for a prospective note. Advisory only."""
    return get_services().tracker.validate_note_creation(
        practitioner_id=req_body.practitioner_id or identity.sub,
        client_id=req_body.client_id,
        template_id=req_body.template_id,
        consent_id=req_body.consent_id,
    )


@router.get("/audit/{resource_type}/{resource_id}")
@limiter.limit("60/minute")
async def get_compliance_trail(
    request: Request,
    resource_type: ResourceType,
    resource_id: str,
    limit: int = Query(default=100, ge=1, le=1000),
    identity: Identity = Depends(require_role("auditor")),
) -> List[ComplianceAuditLog]:
    return get_services().tracker.get_audit_trail(resource_type, resource_id, limit)


@router.get("/report")
async def compliance_report(
    start: datetime,
    end: Optional[datetime] = None,
    identity: Identity = Depends(require_role("auditor")),
) -> ComplianceReport:
    """Aggregate event counts for ``start <= timestamp <= end``."""
    end = end or utc_now()
    try:
        return get_services().tracker.generate_compliance_report(start, end)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail={"error": "invalid_period", "message": "Report end precedes start"},
        )


@router.post("/professionals")
async def register_professional(
    req_body: RegisterProfessionalRequest,
    identity: Identity = Depends(require_role("admin")),
) -> Dict[str, Any]:
    get_services().tracker.register_professional(
        req_body.professional_id,
        req_body.license_number,
        req_body.license_expiry,
        full_name=req_body.full_name,
        professional_order=req_body.professional_order,
    )
    return {"professional_id": req_body.professional_id, "registered": True}


@router.post("/consents")
async def record_consent(
    request: Request,
    req_body: RecordConsentRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    consent_id = get_services().tracker.record_consent(
        req_body.client_id,
        req_body.consent_type,
        data_types=req_body.data_types,
        expiry_date=req_body.expiry_date,
        context=audit_context(request, identity),
    )
    return {"consent_id": consent_id, "status": "active"}


@router.post("/consents/{consent_id}/withdraw")
async def withdraw_registered_consent(
    request: Request,
    consent_id: str,
    req_body: WithdrawRegisteredConsentRequest,
    identity: Identity = Depends(require_role("clinician")),
) -> Dict[str, Any]:
    withdrawn = get_services().tracker.withdraw_consent(
        consent_id, req_body.client_id, context=audit_context(request, identity)
    )
    if not withdrawn:
        raise HTTPException(
            status_code=404,
            detail={"error": "not_found", "message": "No active consent matched"},
        )
    return {"consent_id": consent_id, "status": "withdrawn"}


@router.post("/data-subject-requests")
async def open_data_subject_request(
    request: Request,
    req_body: DataSubjectRequestInput,
    identity: Identity = Depends(require_role("clinician")),
) -> DataSubjectRequestRecord:
    """Register a client's rights request; the record carries its due date."""
    return get_services().tracker.open_data_subject_request(
        req_body.client_id,
        req_body.request_type,
        context=audit_context(request, identity),
    )


@router.post("/breaches")
async def report_breach(
    request: Request,
    req_body: ReportBreachRequest,
    identity: Identity = Depends(require_role("admin")),
) -> BreachIncident:
    """Record a security incident. It is counted as a violation in reports."""
    return get_services().tracker.report_breach(
        req_body.severity,
        req_body.affected_clients,
        context=audit_context(request, identity),
        breach_type=req_body.breach_type,
        description=req_body.description,
    )
