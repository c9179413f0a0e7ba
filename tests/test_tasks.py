import datetime as dt

from sqlalchemy import select

from givingcore.models.enums import TenantSubscriptionStatus
from givingcore.models.payment_models import Payout
from givingcore.workers.tasks import run_dunning, sync_payouts
from givingcore.workers.tasks import reconciliation_tasks


def test_sync_payouts_task_runs_eagerly(db_session, monkeypatch, providers, paystack_client):
    paystack_client.settlements = [
        {"id": 88, "effective_amount": 10000, "currency": "NGN", "status": "success", "settlement_date": None}
    ]
    monkeypatch.setattr(reconciliation_tasks.ProviderClients, "from_settings", lambda settings: providers)

    result = sync_payouts.apply(
        kwargs={"tenant_id": "tenant-1", "provider": "paystack", "from_date": "2024-03-01"}
    ).get()

    assert result == {"payouts": 1, "transactions": 0}
    assert paystack_client.calls[0] == (
        "iter_settlements",
        dt.datetime(2024, 3, 1, tzinfo=dt.timezone.utc),
        None,
    )
    assert db_session.scalar(select(Payout.provider_ref)) == "88"


def test_run_dunning_task_dry_run(make_subscription):
    subscription = make_subscription(
        status=TenantSubscriptionStatus.PAST_DUE,
        current_period_end=dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=10),
        provider_metadata={"billingEmail": "billing@church.org"},
    )

    summary = run_dunning.apply(kwargs={"dry_run": True}).get()

    assert summary["dry_run"] is True
    assert summary["targets"] == [
        {
            "tenant_id": subscription.tenant_id,
            "subscription_id": subscription.id,
            "plan_code": "growth",
            "recipient_count": 1,
        }
    ]
