"""payment integration core schema

Revision ID: 0001_payment_core
Revises:
Create Date: 2026-10-18 09:00:00.000000

Creates the giving, billing, webhook ledger, dispute and payout tables.
Unique constraints are the concurrency primitive for the webhook ledger,
dispute creation and reconciliation upserts.
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_payment_core'
down_revision = None
branch_labels = None
depends_on = None

paymentprovider = sa.Enum('STRIPE', 'PAYSTACK', name='paymentprovider')
webhookprovider = sa.Enum('STRIPE', 'PAYSTACK', 'STRIPE_PLATFORM', 'PAYSTACK_PLATFORM', name='webhookprovider')
webhookeventstatus = sa.Enum('RECEIVED', 'PROCESSED', 'FAILED', name='webhookeventstatus')
donationstatus = sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED', name='donationstatus')
recurringstatus = sa.Enum('ACTIVE', 'PAST_DUE', 'CANCELED', name='recurringstatus')
tenantsubscriptionstatus = sa.Enum(
    'TRIALING', 'ACTIVE', 'PAST_DUE', 'PAUSED', 'CANCELED', name='tenantsubscriptionstatus'
)
disputeevidencetype = sa.Enum(
    'RECEIPT', 'CUSTOMER_COMMUNICATION', 'PRODUCT_DESCRIPTION', 'REFUND_POLICY', 'CUSTOMER_EMAIL',
    'CUSTOMER_NAME', 'SHIPPING_DOCUMENTATION', 'SHIPPING_TRACKING', 'SHIPPING_DATE',
    'SERVICE_DOCUMENTATION', 'SERVICE_DATE', 'UNCATEGORIZED',
    name='disputeevidencetype',
)
disputeevidencestatus = sa.Enum('PENDING', 'SUBMITTED', 'FAILED', name='disputeevidencestatus')


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'members',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('church_id', sa.String(length=64), nullable=False),
        sa.Column('first_name', sa.String(length=120), nullable=False),
        sa.Column('last_name', sa.String(length=120), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=40), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_members_tenant_id', 'members', ['tenant_id'])
    op.create_index('ix_members_church_id', 'members', ['church_id'])

    op.create_table(
        'recurring_donations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('church_id', sa.String(length=64), nullable=False),
        sa.Column('member_id', sa.Integer(), sa.ForeignKey('members.id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('interval', sa.String(length=20), nullable=False),
        sa.Column('status', recurringstatus, nullable=False),
        sa.Column('provider', paymentprovider, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=True),
        sa.Column('last_charge_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_recurring_donations_tenant_id', 'recurring_donations', ['tenant_id'])
    op.create_index('ix_recurring_donations_church_id', 'recurring_donations', ['church_id'])
    op.create_index('ix_recurring_donations_status', 'recurring_donations', ['status'])
    op.create_index('ix_recurring_donations_provider_ref', 'recurring_donations', ['provider_ref'])

    op.create_table(
        'donations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('church_id', sa.String(length=64), nullable=False),
        sa.Column('member_id', sa.Integer(), sa.ForeignKey('members.id'), nullable=True),
        sa.Column('recurring_donation_id', sa.Integer(), sa.ForeignKey('recurring_donations.id'), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', donationstatus, nullable=False),
        sa.Column('provider', paymentprovider, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=False),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('donor_name', sa.String(length=255), nullable=True),
        sa.Column('donor_email', sa.String(length=255), nullable=True),
        sa.Column('donor_phone', sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_donations_tenant_id', 'donations', ['tenant_id'])
    op.create_index('ix_donations_church_id', 'donations', ['church_id'])
    op.create_index('ix_donations_status', 'donations', ['status'])
    op.create_index('ix_donations_provider_ref', 'donations', ['provider_ref'])

    op.create_table(
        'donation_receipts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('donation_id', sa.Integer(), sa.ForeignKey('donations.id'), nullable=False),
        sa.Column('church_id', sa.String(length=64), nullable=False),
        sa.Column('receipt_number', sa.String(length=40), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('donation_id'),
        sa.UniqueConstraint('receipt_number'),
    )
    op.create_index('ix_donation_receipts_church_id', 'donation_receipts', ['church_id'])

    op.create_table(
        'tenant_subscriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('plan_code', sa.String(length=60), nullable=True),
        sa.Column('status', tenantsubscriptionstatus, nullable=False),
        sa.Column('provider', paymentprovider, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('canceled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenant_subscriptions_tenant_id', 'tenant_subscriptions', ['tenant_id'])
    op.create_index('ix_tenant_subscriptions_status', 'tenant_subscriptions', ['status'])
    op.create_index('ix_tenant_subscriptions_provider_ref', 'tenant_subscriptions', ['provider_ref'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', webhookprovider, nullable=False),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=80), nullable=False),
        sa.Column('payload_hash', sa.String(length=64), nullable=False),
        sa.Column('status', webhookeventstatus, nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('tenant_id', sa.String(length=64), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'provider', 'external_event_id', name='uq_webhook_events_provider_external_event_id'
        ),
    )
    op.create_index('ix_webhook_events_provider', 'webhook_events', ['provider'])
    op.create_index('ix_webhook_events_status', 'webhook_events', ['status'])

    op.create_table(
        'disputes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=True),
        sa.Column('church_id', sa.String(length=64), nullable=True),
        sa.Column('donation_id', sa.Integer(), sa.ForeignKey('donations.id'), nullable=True),
        sa.Column('provider', paymentprovider, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=False),
        sa.Column('status', sa.String(length=40), nullable=False, server_default='needs_response'),
        sa.Column('reason', sa.String(length=120), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=True),
        sa.Column('evidence_due_by', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_disputes_provider_provider_ref'),
    )
    op.create_index('ix_disputes_tenant_id', 'disputes', ['tenant_id'])

    op.create_table(
        'dispute_evidence',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('dispute_id', sa.Integer(), sa.ForeignKey('disputes.id'), nullable=False),
        sa.Column('type', disputeevidencetype, nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('file_path', sa.String(length=512), nullable=True),
        sa.Column('file_name', sa.String(length=255), nullable=True),
        sa.Column('file_mime', sa.String(length=120), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('status', disputeevidencestatus, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_dispute_evidence_dispute_id', 'dispute_evidence', ['dispute_id'])

    op.create_table(
        'payouts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('provider', paymentprovider, nullable=False),
        sa.Column('provider_ref', sa.String(length=120), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('status', sa.String(length=40), nullable=False),
        sa.Column('arrival_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_payouts_provider_provider_ref'),
    )
    op.create_index('ix_payouts_tenant_id', 'payouts', ['tenant_id'])

    op.create_table(
        'payout_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('payout_id', sa.Integer(), sa.ForeignKey('payouts.id'), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('church_id', sa.String(length=64), nullable=True),
        sa.Column('donation_id', sa.Integer(), sa.ForeignKey('donations.id'), nullable=True),
        sa.Column('provider_ref', sa.String(length=120), nullable=False),
        sa.Column('source_ref', sa.String(length=120), nullable=True),
        sa.Column('type', sa.String(length=60), nullable=True),
        sa.Column('amount', sa.Numeric(14, 2), nullable=False),
        sa.Column('fee', sa.Numeric(14, 2), nullable=False),
        sa.Column('net', sa.Numeric(14, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payout_id', 'provider_ref', name='uq_payout_transactions_payout_id_provider_ref'),
    )
    op.create_index('ix_payout_transactions_payout_id', 'payout_transactions', ['payout_id'])
    op.create_index('ix_payout_transactions_tenant_id', 'payout_transactions', ['tenant_id'])
    op.create_index('ix_payout_transactions_source_ref', 'payout_transactions', ['source_ref'])


def downgrade() -> None:
    for table in (
        'payout_transactions',
        'payouts',
        'dispute_evidence',
        'disputes',
        'webhook_events',
        'tenant_subscriptions',
        'donation_receipts',
        'donations',
        'recurring_donations',
        'members',
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum in (
        disputeevidencestatus,
        disputeevidencetype,
        tenantsubscriptionstatus,
        recurringstatus,
        donationstatus,
        webhookeventstatus,
        webhookprovider,
        paymentprovider,
    ):
        enum.drop(bind, checkfirst=True)
