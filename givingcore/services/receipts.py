from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from givingcore.models.models import Donation, DonationReceipt
from givingcore.utils.id_generator import generate_receipt_number

logger = logging.getLogger(__name__)


def ensure_donation_receipt(db: Session, donation: Donation) -> DonationReceipt:
    """Issue the receipt for a completed donation, at most once.

    Runs in a savepoint so a concurrent issuer hitting the unique constraint
    does not roll back the caller's transaction.
    """
    existing = db.scalar(select(DonationReceipt).where(DonationReceipt.donation_id == donation.id))
    if existing:
        return existing

    receipt = DonationReceipt(
        donation_id=donation.id,
        church_id=donation.church_id,
        receipt_number=generate_receipt_number(),
        snapshot={
            "amount": str(donation.amount),
            "currency": donation.currency,
            "donor_name": donation.donor_name,
            "donor_email": donation.donor_email,
            "donor_phone": donation.donor_phone,
            "provider": donation.provider.value,
            "provider_ref": donation.provider_ref,
            "recurring_donation_id": donation.recurring_donation_id,
        },
    )
    try:
        with db.begin_nested():
            db.add(receipt)
    except IntegrityError:
        logger.info("Receipt for donation %s issued concurrently", donation.id)
        return db.scalar(select(DonationReceipt).where(DonationReceipt.donation_id == donation.id))
    logger.info("Issued receipt %s for donation %s", receipt.receipt_number, donation.id)
    return receipt
