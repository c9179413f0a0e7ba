"""Dispute evidence recording and submission.

Evidence rows are append-only history: each one is recorded PENDING, then
moves to SUBMITTED (with the provider reference) or FAILED (with the provider
error). A failed submission is never retried here; the operator decides.

Stripe takes evidence field by field and accepts files through its file
upload API. Paystack takes one fixed bundle (donor contact details plus a
service description) and has no final-submission step.
"""
from __future__ import annotations

import datetime as dt
import logging
import re
import uuid
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from givingcore import metrics
from givingcore.core.audit import log_audit_event, log_failure
from givingcore.core.exceptions import BadRequestError, NotFoundError, ProviderCallError
from givingcore.models.enums import DisputeEvidenceStatus, DisputeEvidenceType, PaymentProvider
from givingcore.models.models import Donation
from givingcore.models.payment_models import Dispute, DisputeEvidence
from givingcore.services.payment_providers import PaystackClient, ProviderClients, StripeGateway
from givingcore.storage.evidence_store import EvidenceFileMissing, EvidenceStore

logger = logging.getLogger(__name__)

FILE_EVIDENCE_TYPES = frozenset(
    {
        DisputeEvidenceType.RECEIPT,
        DisputeEvidenceType.CUSTOMER_COMMUNICATION,
        DisputeEvidenceType.SHIPPING_DOCUMENTATION,
        DisputeEvidenceType.SERVICE_DOCUMENTATION,
    }
)

STRIPE_EVIDENCE_FIELD: dict[DisputeEvidenceType, str] = {
    DisputeEvidenceType.UNCATEGORIZED: "uncategorized_text",
    DisputeEvidenceType.RECEIPT: "receipt",
    DisputeEvidenceType.CUSTOMER_COMMUNICATION: "customer_communication",
    DisputeEvidenceType.PRODUCT_DESCRIPTION: "product_description",
    DisputeEvidenceType.REFUND_POLICY: "refund_policy",
    DisputeEvidenceType.CUSTOMER_EMAIL: "customer_email_address",
    DisputeEvidenceType.CUSTOMER_NAME: "customer_name",
    DisputeEvidenceType.SHIPPING_DOCUMENTATION: "shipping_documentation",
    DisputeEvidenceType.SHIPPING_TRACKING: "shipping_tracking_number",
    DisputeEvidenceType.SHIPPING_DATE: "shipping_date",
    DisputeEvidenceType.SERVICE_DOCUMENTATION: "service_documentation",
    DisputeEvidenceType.SERVICE_DATE: "service_date",
}

_UNSAFE_FILENAME = re.compile(r"[^A-Za-z0-9._-]+")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class PaystackEvidenceBundle:
    customer_email: str
    customer_name: str
    customer_phone: str
    service_details: str


def paystack_bundle(donation: Donation | None, evidence: DisputeEvidence) -> PaystackEvidenceBundle:
    """Donor contact fields from the donation, falling back to its member."""
    if donation is None:
        raise BadRequestError("Donation details are required to submit Paystack evidence")
    member = donation.member
    email = donation.donor_email or (member.email if member else None)
    name = donation.donor_name or (member.full_name if member else None)
    phone = donation.donor_phone or (member.phone if member else None)
    service_details = (evidence.text or "").strip() or (evidence.description or "").strip()

    missing = [
        label
        for label, value in (
            ("customer_email", email),
            ("customer_name", name),
            ("customer_phone", phone),
            ("service_details", service_details),
        )
        if not value
    ]
    if missing:
        raise BadRequestError(
            "Paystack evidence requires donor email, name, phone, and service details",
            details={"missing": missing},
        )
    return PaystackEvidenceBundle(email, name, phone, service_details)


class DisputeService:
    def __init__(self, db: Session, clients: ProviderClients, store: EvidenceStore):
        self.db = db
        self.clients = clients
        self.store = store

    def get_dispute(self, dispute_id: int, tenant_id: str | None = None) -> Dispute:
        dispute = self.db.get(Dispute, dispute_id)
        if dispute is None or (tenant_id is not None and dispute.tenant_id != tenant_id):
            raise NotFoundError("Dispute not found", details={"dispute_id": dispute_id})
        return dispute

    def _get_evidence(self, dispute: Dispute, evidence_id: int) -> DisputeEvidence:
        evidence = self.db.get(DisputeEvidence, evidence_id)
        if evidence is None or evidence.dispute_id != dispute.id:
            raise NotFoundError("Evidence not found", details={"evidence_id": evidence_id})
        return evidence

    def list_evidence(self, dispute_id: int, tenant_id: str | None = None) -> list[DisputeEvidence]:
        dispute = self.get_dispute(dispute_id, tenant_id)
        return list(
            self.db.scalars(
                select(DisputeEvidence).where(DisputeEvidence.dispute_id == dispute.id).order_by(DisputeEvidence.id)
            )
        )

    def create_evidence(
        self,
        dispute_id: int,
        evidence_type: DisputeEvidenceType,
        *,
        description: str | None = None,
        text: str | None = None,
        file_content: bytes | None = None,
        file_name: str | None = None,
        file_mime: str | None = None,
        tenant_id: str | None = None,
    ) -> DisputeEvidence:
        """Record a PENDING evidence row, storing the attached file first."""
        dispute = self.get_dispute(dispute_id, tenant_id)
        evidence = DisputeEvidence(
            dispute_id=dispute.id,
            type=evidence_type,
            description=description,
            text=text,
            status=DisputeEvidenceStatus.PENDING,
        )
        if file_content is not None:
            name = _UNSAFE_FILENAME.sub("_", file_name or "evidence") or "evidence"
            key = f"disputes/{dispute.id}/{uuid.uuid4().hex}-{name}"
            evidence.file_path = self.store.put(file_content, key, file_mime or "application/octet-stream")
            evidence.file_name = file_name or name
            evidence.file_mime = file_mime or "application/octet-stream"
            evidence.file_size = len(file_content)
        self.db.add(evidence)
        self.db.commit()
        self.db.refresh(evidence)
        logger.info("Recorded %s evidence %s for dispute %s", evidence_type.value, evidence.id, dispute.id)
        return evidence

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(
        self,
        dispute_id: int,
        evidence_id: int,
        submit_final: bool = False,
        tenant_id: str | None = None,
        actor_id: str | None = None,
    ) -> DisputeEvidence:
        dispute = self.get_dispute(dispute_id, tenant_id)
        evidence = self._get_evidence(dispute, evidence_id)
        if evidence.status is DisputeEvidenceStatus.SUBMITTED:
            raise BadRequestError("Evidence has already been submitted", details={"evidence_id": evidence.id})
        if submit_final and dispute.provider is not PaymentProvider.STRIPE:
            raise BadRequestError(
                f"{dispute.provider.value} does not support final dispute submission",
                details={"provider": dispute.provider.value},
            )

        gateway = self.clients.for_provider(dispute.provider)
        if dispute.provider is PaymentProvider.STRIPE:
            send = self._prepare_stripe(gateway, dispute, evidence)
        else:
            send = self._prepare_paystack(gateway, dispute, evidence)

        try:
            provider_ref = send()
        except ProviderCallError as exc:
            self._mark_failed(dispute, evidence, exc, actor_id)
            raise

        evidence.status = DisputeEvidenceStatus.SUBMITTED
        evidence.provider_ref = provider_ref
        evidence.error = None
        evidence.submitted_at = utcnow()
        self.db.commit()
        metrics.dispute_evidence(dispute.provider.value, "submitted")
        log_audit_event(
            "dispute.evidence.submitted",
            tenant_id=dispute.tenant_id,
            church_id=dispute.church_id,
            actor_type="user",
            target_type="DisputeEvidence",
            target_id=str(evidence.id),
            provider=dispute.provider.value,
            evidence_type=evidence.type.value,
            actor_id=actor_id,
        )

        if submit_final:
            self.finalize(dispute.id, tenant_id=tenant_id, actor_id=actor_id)
        return evidence

    def _prepare_stripe(self, gateway: StripeGateway, dispute: Dispute, evidence: DisputeEvidence):
        field = STRIPE_EVIDENCE_FIELD[evidence.type]
        if evidence.type in FILE_EVIDENCE_TYPES:
            if not evidence.file_path or not evidence.file_name:
                raise BadRequestError("Evidence file is required", details={"type": evidence.type.value})
            try:
                content = self.store.read(evidence.file_path)
            except EvidenceFileMissing as exc:
                raise BadRequestError("Evidence file is not available", details={"evidence_id": evidence.id}) from exc

            def send() -> str:
                file_id = gateway.upload_evidence_file(content, evidence.file_name)
                gateway.update_dispute(dispute.provider_ref, {field: file_id})
                return file_id

            return send

        text = (evidence.text or "").strip()
        if not text:
            raise BadRequestError("Evidence text is required", details={"type": evidence.type.value})

        def send() -> str | None:
            gateway.update_dispute(dispute.provider_ref, {field: text})
            return None

        return send

    def _prepare_paystack(self, gateway: PaystackClient, dispute: Dispute, evidence: DisputeEvidence):
        donation = self.db.get(Donation, dispute.donation_id) if dispute.donation_id else None
        bundle = paystack_bundle(donation, evidence)

        def send() -> str | None:
            data = gateway.add_dispute_evidence(
                dispute.provider_ref,
                customer_email=bundle.customer_email,
                customer_name=bundle.customer_name,
                customer_phone=bundle.customer_phone,
                service_details=bundle.service_details,
            )
            return str(data["id"]) if data.get("id") is not None else None

        return send

    def _mark_failed(
        self, dispute: Dispute, evidence: DisputeEvidence, exc: ProviderCallError, actor_id: str | None
    ) -> None:
        evidence.status = DisputeEvidenceStatus.FAILED
        evidence.error = exc.message
        self.db.commit()
        metrics.dispute_evidence(dispute.provider.value, "failed")
        logger.warning("Evidence %s for dispute %s failed: %s", evidence.id, dispute.id, exc.message)
        log_failure(
            "dispute.evidence.submitted",
            error=exc.message,
            tenant_id=dispute.tenant_id,
            church_id=dispute.church_id,
            actor_type="user",
            target_type="DisputeEvidence",
            target_id=str(evidence.id),
            provider=dispute.provider.value,
            actor_id=actor_id,
        )

    def finalize(self, dispute_id: int, tenant_id: str | None = None, actor_id: str | None = None) -> Dispute:
        """Submit the dispute for review. Only Stripe has this step."""
        dispute = self.get_dispute(dispute_id, tenant_id)
        if dispute.provider is not PaymentProvider.STRIPE:
            raise BadRequestError(
                f"{dispute.provider.value} does not support final dispute submission",
                details={"provider": dispute.provider.value},
            )
        gateway = self.clients.require_stripe()
        gateway.submit_dispute(dispute.provider_ref)
        dispute.submitted_at = utcnow()
        self.db.commit()
        log_audit_event(
            "dispute.submitted",
            tenant_id=dispute.tenant_id,
            church_id=dispute.church_id,
            actor_type="user",
            target_type="Dispute",
            target_id=str(dispute.id),
            provider=dispute.provider.value,
            actor_id=actor_id,
        )
        return dispute
