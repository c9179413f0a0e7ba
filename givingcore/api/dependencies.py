"""Request-scoped dependencies.

Identity is established upstream; the verified tenant and user ids arrive as
``X-Tenant-Id`` / ``X-User-Id`` headers.
"""
from typing import Annotated, TypeAlias

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session

from givingcore.db.session import get_db
from givingcore.services.dispute_service import DisputeService
from givingcore.services.payment_providers import ProviderClients
from givingcore.services.reconciliation import ReconciliationEngine
from givingcore.services.webhook_service import WebhookService
from givingcore.storage.evidence_store import EvidenceStore

DbDep: TypeAlias = Annotated[Session, Depends(get_db)]


def get_providers(request: Request) -> ProviderClients:
    return request.app.state.providers


def get_evidence_store(request: Request) -> EvidenceStore:
    return request.app.state.evidence_store


ProvidersDep: TypeAlias = Annotated[ProviderClients, Depends(get_providers)]


def get_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> str:
    if not x_tenant_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing tenant identity")
    return x_tenant_id


def get_user_id(x_user_id: Annotated[str | None, Header()] = None) -> str | None:
    return x_user_id


TenantDep: TypeAlias = Annotated[str, Depends(get_tenant_id)]
UserDep: TypeAlias = Annotated[str | None, Depends(get_user_id)]


def get_webhook_service(db: DbDep, providers: ProvidersDep) -> WebhookService:
    return WebhookService(db, providers)


def get_dispute_service(
    db: DbDep, providers: ProvidersDep, store: Annotated[EvidenceStore, Depends(get_evidence_store)]
) -> DisputeService:
    return DisputeService(db, providers, store)


def get_reconciliation_engine(db: DbDep, providers: ProvidersDep) -> ReconciliationEngine:
    return ReconciliationEngine(db, providers)


async def get_raw_body(request: Request) -> bytes:
    """Read the body before a sync route runs; signatures are checked over these exact bytes."""
    return await request.body()


RawBodyDep: TypeAlias = Annotated[bytes, Depends(get_raw_body)]
WebhookServiceDep: TypeAlias = Annotated[WebhookService, Depends(get_webhook_service)]
DisputeServiceDep: TypeAlias = Annotated[DisputeService, Depends(get_dispute_service)]
ReconciliationDep: TypeAlias = Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)]
