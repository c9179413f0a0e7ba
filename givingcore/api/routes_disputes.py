import logging
from typing import Annotated

from fastapi import APIRouter, File, Form, Request, UploadFile

from givingcore.api.dependencies import DisputeServiceDep, TenantDep, UserDep
from givingcore.api.rate_limit import RATE_LIMITS, limiter
from givingcore.api.schemas import DisputeOut, EvidenceOut, EvidenceSubmit
from givingcore.core.exceptions import BadRequestError
from givingcore.models.enums import DisputeEvidenceType

logger = logging.getLogger(__name__)
router = APIRouter()

MAX_EVIDENCE_BYTES = 5 * 1024 * 1024


@router.get("/{dispute_id}", response_model=DisputeOut)
def get_dispute(dispute_id: int, tenant_id: TenantDep, service: DisputeServiceDep):
    return service.get_dispute(dispute_id, tenant_id)


@router.get("/{dispute_id}/evidence", response_model=list[EvidenceOut])
def list_evidence(dispute_id: int, tenant_id: TenantDep, service: DisputeServiceDep):
    return service.list_evidence(dispute_id, tenant_id)


@router.post("/{dispute_id}/evidence", response_model=EvidenceOut, status_code=201)
@limiter.limit(RATE_LIMITS["dispute_evidence"])
def create_evidence(
    request: Request,
    dispute_id: int,
    tenant_id: TenantDep,
    service: DisputeServiceDep,
    type: Annotated[DisputeEvidenceType, Form()],
    description: Annotated[str | None, Form()] = None,
    text: Annotated[str | None, Form()] = None,
    file: Annotated[UploadFile | None, File()] = None,
):
    """Record evidence as PENDING. Files are stored before the row is written."""
    content = name = mime = None
    if file is not None:
        content = file.file.read()
        if not content:
            raise BadRequestError("Evidence file is empty")
        if len(content) > MAX_EVIDENCE_BYTES:
            raise BadRequestError("Evidence file too large. Maximum size is 5MB.")
        name = file.filename
        mime = file.content_type
    return service.create_evidence(
        dispute_id,
        type,
        description=description,
        text=text,
        file_content=content,
        file_name=name,
        file_mime=mime,
        tenant_id=tenant_id,
    )


@router.post("/{dispute_id}/evidence/{evidence_id}/submit", response_model=EvidenceOut)
@limiter.limit(RATE_LIMITS["dispute_evidence"])
def submit_evidence(
    request: Request,
    dispute_id: int,
    evidence_id: int,
    tenant_id: TenantDep,
    user_id: UserDep,
    service: DisputeServiceDep,
    body: EvidenceSubmit | None = None,
):
    submit_final = body.submit_final if body else False
    return service.submit(dispute_id, evidence_id, submit_final=submit_final, tenant_id=tenant_id, actor_id=user_id)


@router.post("/{dispute_id}/submit", response_model=DisputeOut)
@limiter.limit(RATE_LIMITS["dispute_evidence"])
def submit_dispute(
    request: Request,
    dispute_id: int,
    tenant_id: TenantDep,
    user_id: UserDep,
    service: DisputeServiceDep,
):
    """Final submission for review. Stripe only; Paystack answers 400."""
    return service.finalize(dispute_id, tenant_id=tenant_id, actor_id=user_id)
