"""Stage invoice composer - prorates a proposal into a stage invoice and records it"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Proposal
from ...services.address_matcher import parse_address
from ...services.billcom_service import STAGE_LABELS, BillingPlatform, BillingPlatformError
from ...services.tax_calculator import TaxResolver, to_cents
from .errors import CounterpartyResolutionError, InvoiceCreationError, MissingAddressError
from .repository import SettlementRepository
from .schemas import InvoiceResult, LineItemSnapshot, ProposalSnapshot, StageItem, TierSnapshot

logger = logging.getLogger(__name__)

# Share of the full proposal billed at each stage
STAGE_FRACTIONS = {
    "deposit": Decimal("0.5"),
    "roughin": Decimal("0.3"),
    "final": Decimal("0.2"),
}

STATUS_SENT = "SENT"
STATUS_FAILED = "FAILED"


def select_items(
    proposal: ProposalSnapshot, selected_tier: Optional[TierSnapshot]
) -> list[LineItemSnapshot]:
    """Items billed for the proposal: the selected tier only (multi-tier), minus unpicked add-ons"""
    items = proposal.items
    if proposal.tier_mode == "multi":
        tier_id = selected_tier.id if selected_tier else None
        items = [item for item in items if item.tier_id == tier_id]
    return [item for item in items if item.included]


def prorate(items: list[LineItemSnapshot], stage: str, fraction: Decimal) -> list[StageItem]:
    """Apply the stage fraction to quantity and total. Stored items are left untouched."""
    return [
        StageItem(
            proposal_item_id=item.id,
            name=item.name,
            description=item.description,
            unit_price=item.unit_price,
            quantity=item.quantity * fraction,
            total_price=to_cents(item.unit_price * item.quantity * fraction),
            stage=stage,
        )
        for item in items
    ]


def reference_number_for(proposal: Proposal) -> str:
    """Linked job's number, else a stable PROP- reference"""
    if proposal.job is not None:
        return proposal.job.job_number
    return f"PROP-{proposal.proposal_number}"


class StageInvoiceComposer:
    """Composes one stage invoice per proposal and stage; repeat calls reuse the first"""

    def __init__(self, platform: BillingPlatform, tax_resolver: TaxResolver, timeout: float = 30.0):
        self.platform = platform
        self.tax_resolver = tax_resolver
        self.timeout = timeout
        self.repo = SettlementRepository()

    async def compose(
        self,
        db: Session,
        proposal: ProposalSnapshot,
        selected_tier: Optional[TierSnapshot],
        stage: str,
        stage_fraction: Optional[Decimal] = None,
    ) -> InvoiceResult:
        if stage not in STAGE_FRACTIONS:
            raise ValueError(f"Unknown billing stage: {stage}")
        fraction = stage_fraction if stage_fraction is not None else STAGE_FRACTIONS[stage]

        record = self.repo.get_proposal(db, proposal.id)
        if record is None:
            raise InvoiceCreationError(f"Proposal {proposal.id} not found")

        # Idempotency: one invoice per proposal and stage
        existing_id = getattr(record, f"{stage}_invoice_id")
        if existing_id:
            logger.info(
                f"♻️ Proposal #{record.proposal_number} already has {stage} invoice {existing_id}, reusing"
            )
            return InvoiceResult(
                stage=stage,
                invoice_id=existing_id,
                invoice_link=getattr(record, f"{stage}_invoice_link"),
                stage_fraction=fraction,
                reused=True,
            )

        # Re-read so an address synced moments ago decides the tax jurisdiction
        customer = self.repo.get_customer(db, record.customer_id)
        if customer is not None:
            db.refresh(customer)
        if customer is None or not (customer.address or "").strip():
            raise MissingAddressError(
                "Customer has no service address; cannot determine tax jurisdiction"
            )

        customer_external_id = customer.billing_customer_id or record.billing_customer_id
        if not customer_external_id:
            raise CounterpartyResolutionError("Customer is not linked to a billing platform customer")

        stage_items = prorate(select_items(proposal, selected_tier), stage, fraction)
        if not stage_items:
            raise InvoiceCreationError(f"Proposal #{record.proposal_number} has no billable items")

        subtotal = sum((item.total_price for item in stage_items), Decimal("0.00"))
        tax = self.tax_resolver.resolve(subtotal, parse_address(customer.address))
        reference_number = reference_number_for(record)

        logger.info(
            f"🧾 Creating {stage} invoice for proposal #{record.proposal_number}: "
            f"{len(stage_items)} items, subtotal {tax.subtotal}, "
            f"tax {tax.total_tax_amount} ({tax.county}), total {tax.total}"
        )

        try:
            billing_invoice = await asyncio.wait_for(
                self.platform.create_invoice(
                    customer_external_id=customer_external_id,
                    reference_number=reference_number,
                    stage=stage,
                    stage_fraction=fraction,
                    items=stage_items,
                    tax=tax,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            message = f"Billing platform did not respond within {self.timeout:g}s"
            self._mark_failed(db, record, stage, message)
            raise InvoiceCreationError(message) from e
        except (BillingPlatformError, httpx.HTTPError) as e:
            self._mark_failed(db, record, stage, str(e))
            raise InvoiceCreationError(str(e)) from e

        try:
            invoice = self.repo.add_invoice(
                db,
                customer_id=customer.id,
                proposal_id=record.id,
                job_stage=stage,
                reference_number=reference_number,
                subtotal=tax.subtotal,
                tax_rate=tax.total_tax_rate,
                tax_amount=tax.total_tax_amount,
                state_tax_amount=tax.state_tax_amount,
                county_tax_amount=tax.county_tax_amount,
                county=tax.county,
                total=tax.total,
                billing_invoice_id=billing_invoice.external_invoice_id,
                invoice_link=billing_invoice.customer_facing_url,
                status="sent",
            )
            setattr(record, f"{stage}_invoice_id", billing_invoice.external_invoice_id)
            setattr(record, f"{stage}_invoice_link", billing_invoice.customer_facing_url)
            setattr(record, f"{stage}_status", STATUS_SENT)
            record.billing_customer_id = customer_external_id
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            message = (
                f"Invoice {billing_invoice.external_invoice_id} was created in the billing platform "
                f"but could not be saved: {e}"
            )
            logger.error(f"❌ {message}")
            self._mark_failed(db, record, stage, message)
            raise InvoiceCreationError(message) from e

        logger.info(
            f"✅ {STAGE_LABELS[stage]} invoice {billing_invoice.external_invoice_id} "
            f"created for proposal #{record.proposal_number}"
        )
        return InvoiceResult(
            stage=stage,
            invoice_id=billing_invoice.external_invoice_id,
            invoice_link=billing_invoice.customer_facing_url,
            local_invoice_id=invoice.id,
            stage_fraction=fraction,
            reference_number=reference_number,
            subtotal=tax.subtotal,
            state_tax_amount=tax.state_tax_amount,
            county_tax_amount=tax.county_tax_amount,
            county=tax.county,
            total=tax.total,
        )

    def _mark_failed(self, db: Session, record: Proposal, stage: str, message: str) -> None:
        """Flag the stage as FAILED with a note a human can act on"""
        logger.error(
            f"❌ {STAGE_LABELS[stage]} invoice failed for proposal #{record.proposal_number}: {message}"
        )
        note = (
            f"[{datetime.utcnow().isoformat()}] {STAGE_LABELS[stage]} invoice creation failed: "
            f"{message}. Please retry or create manually in Bill.com."
        )
        setattr(record, f"{stage}_status", STATUS_FAILED)
        record.notes = f"{record.notes}\n\n{note}" if record.notes else note
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Could not record invoice failure on proposal {record.id}: {e}")
