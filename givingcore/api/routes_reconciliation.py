from fastapi import APIRouter, Request

from givingcore.api.dependencies import ReconciliationDep, TenantDep
from givingcore.api.rate_limit import RATE_LIMITS, limiter
from givingcore.api.schemas import PayoutSyncOut, PayoutSyncRequest

router = APIRouter()


@router.post("/payouts/sync", response_model=PayoutSyncOut)
@limiter.limit(RATE_LIMITS["reconciliation_sync"])
def sync_payouts(request: Request, tenant_id: TenantDep, engine: ReconciliationDep, body: PayoutSyncRequest | None = None):
    """Run a synchronous payout sync for the caller's tenant.

    Long windows belong on the ``reconciliation.sync_payouts`` task instead.
    """
    body = body or PayoutSyncRequest()
    return engine.sync_payouts(tenant_id, provider=body.provider, from_date=body.from_date, to_date=body.to_date)
