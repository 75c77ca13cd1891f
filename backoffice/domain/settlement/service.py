"""Settlement service - runs the approval pipeline and reports a structured outcome"""

import logging
from datetime import datetime
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ...models import Customer, Proposal
from ...services.billcom_service import BillingPlatform
from ...services.job_stages import JobStageTracker
from ...services.tax_calculator import TaxResolver
from .counterparty import BillingCounterpartyResolver
from .errors import (
    CounterpartyResolutionError,
    InvoiceCreationError,
    JobResolutionError,
    MissingAddressError,
    SettlementError,
)
from .invoice_composer import STAGE_FRACTIONS, StageInvoiceComposer
from .job_resolver import JobResolver
from .repository import SettlementRepository
from .schemas import (
    ProposalSnapshot,
    SettlementOutcome,
    SettlementResult,
    SettlementStatusResponse,
    StageInvoiceResponse,
    StageInvoiceState,
)
from .settings import SettlementSettings

logger = logging.getLogger(__name__)


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    return first.get("msg", str(error)).removeprefix("Value error, ")


class SettlementOrchestrator:
    """
    Sequences counterparty → stage invoice → job for an approved proposal.

    settle() never raises: every failure becomes SettlementResult.error with an
    outcome telling the caller how far the pipeline got.
    """

    def __init__(
        self,
        settings: SettlementSettings,
        platform: BillingPlatform,
        tax_resolver: TaxResolver,
        stage_tracker: Optional[JobStageTracker] = None,
        job_resolver: Optional[JobResolver] = None,
    ):
        self.settings = settings
        self.repo = SettlementRepository()
        self.counterparty_resolver = BillingCounterpartyResolver(
            platform, timeout=settings.external_call_timeout
        )
        self.composer = StageInvoiceComposer(
            platform, tax_resolver, timeout=settings.external_call_timeout
        )
        self.job_resolver = job_resolver or JobResolver(settings, stage_tracker=stage_tracker)

    def _prepare(self, db: Session, proposal: Proposal) -> tuple[ProposalSnapshot, Customer]:
        """Validate the proposal and make sure invoicing can determine a tax jurisdiction"""
        snapshot = ProposalSnapshot.model_validate(proposal)
        customer = self.repo.get_customer(db, proposal.customer_id)
        if customer is None or not (customer.address or "").strip():
            raise MissingAddressError(
                "Customer has no service address; cannot determine tax jurisdiction"
            )
        return snapshot, customer

    def _mark_approved(self, db: Session, proposal: Proposal) -> None:
        if proposal.status != "approved":
            proposal.status = "approved"
        if not proposal.approved_at:
            proposal.approved_at = datetime.utcnow()
        db.commit()

    async def settle(self, db: Session, proposal_id: int) -> SettlementResult:
        """Run the full pipeline for a proposal the customer just approved"""
        logger.info(f"📥 Settling approved proposal {proposal_id}")
        try:
            return await self._settle(db, proposal_id)
        except Exception as e:
            db.rollback()
            logger.exception(f"❌ Unexpected settlement failure for proposal {proposal_id}: {e}")
            return SettlementResult(
                success=False,
                outcome=SettlementOutcome.NOT_INVOICED,
                error=f"Unexpected settlement error: {e}",
            )

    async def _settle(self, db: Session, proposal_id: int) -> SettlementResult:
        proposal = self.repo.get_proposal(db, proposal_id)
        if proposal is None:
            return SettlementResult(
                success=False, outcome=SettlementOutcome.NOT_INVOICED, error="Proposal not found"
            )

        self._mark_approved(db, proposal)

        try:
            snapshot, customer = self._prepare(db, proposal)
        except ValidationError as e:
            message = f"Invalid proposal: {_validation_message(e)}"
            logger.warning(f"⚠️ Proposal #{proposal.proposal_number}: {message}")
            return SettlementResult(
                success=False, outcome=SettlementOutcome.NOT_INVOICED, error=message
            )
        except MissingAddressError as e:
            logger.warning(f"⚠️ Proposal #{proposal.proposal_number} not settled: {e}")
            return SettlementResult(
                success=False, outcome=SettlementOutcome.NOT_INVOICED, error=str(e)
            )

        try:
            resolution = await self.counterparty_resolver.resolve_or_create(
                db, customer, existing_external_id=proposal.billing_customer_id
            )
            proposal.billing_customer_id = resolution.external_id
            db.commit()

            invoice = await self.composer.compose(
                db, snapshot, snapshot.selected_tier, "deposit"
            )
        except (CounterpartyResolutionError, MissingAddressError, InvoiceCreationError) as e:
            logger.error(f"❌ Deposit invoice not created for proposal #{proposal.proposal_number}: {e}")
            return SettlementResult(
                success=False, outcome=SettlementOutcome.NOT_INVOICED, error=str(e)
            )

        try:
            job = await self.job_resolver.resolve_job(db, proposal, resolution.customer, invoice)
        except JobResolutionError as e:
            logger.error(f"❌ Job not resolved for proposal #{proposal.proposal_number}: {e}")
            return SettlementResult(
                success=False,
                outcome=SettlementOutcome.INVOICED_JOB_PENDING,
                invoiceId=invoice.invoice_id,
                invoiceLink=invoice.invoice_link,
                error=f"Invoice created but job creation failed: {e}",
            )

        logger.info(
            f"✅ Proposal #{proposal.proposal_number} settled: invoice {invoice.invoice_id}, "
            f"job {job.job_number} ({'merged' if job.merged else 'new' if job.job_id else 'unchanged'})"
        )
        return SettlementResult(
            success=True,
            outcome=SettlementOutcome.SETTLED,
            invoiceId=invoice.invoice_id,
            invoiceLink=invoice.invoice_link,
            jobId=str(job.job_id) if job.job_id is not None else None,
            jobNumber=job.job_number,
            merged=job.merged,
        )

    async def invoice_stage(self, db: Session, proposal_id: int, stage: str) -> StageInvoiceResponse:
        """Create (or reuse) one stage invoice for an approved proposal"""
        if stage not in STAGE_FRACTIONS:
            return StageInvoiceResponse(success=False, stage=stage, error=f"Unknown stage: {stage}")

        proposal = self.repo.get_proposal(db, proposal_id)
        if proposal is None:
            return StageInvoiceResponse(success=False, stage=stage, error="Proposal not found")
        if proposal.status != "approved":
            return StageInvoiceResponse(
                success=False, stage=stage, error="Proposal must be approved before invoicing"
            )

        try:
            snapshot, customer = self._prepare(db, proposal)
            resolution = await self.counterparty_resolver.resolve_or_create(
                db, customer, existing_external_id=proposal.billing_customer_id
            )
            proposal.billing_customer_id = resolution.external_id
            db.commit()
            invoice = await self.composer.compose(db, snapshot, snapshot.selected_tier, stage)
        except ValidationError as e:
            return StageInvoiceResponse(
                success=False, stage=stage, error=f"Invalid proposal: {_validation_message(e)}"
            )
        except SettlementError as e:
            logger.error(f"❌ {stage} invoice failed for proposal #{proposal.proposal_number}: {e}")
            return StageInvoiceResponse(success=False, stage=stage, error=str(e))

        if proposal.job_id:
            try:
                await self.job_resolver.resolve_job(db, proposal, resolution.customer, invoice)
            except JobResolutionError as e:
                logger.warning(f"⚠️ Could not attach {stage} invoice link to job {proposal.job_id}: {e}")

        return StageInvoiceResponse(
            success=True,
            stage=stage,
            invoiceId=invoice.invoice_id,
            invoiceLink=invoice.invoice_link,
            reused=invoice.reused,
        )

    def get_status(self, db: Session, proposal_id: int) -> Optional[SettlementStatusResponse]:
        proposal = self.repo.get_proposal(db, proposal_id)
        if proposal is None:
            return None
        return SettlementStatusResponse(
            proposalId=proposal.id,
            proposalNumber=proposal.proposal_number,
            status=proposal.status,
            approvedAt=proposal.approved_at,
            stages={
                stage: StageInvoiceState(
                    invoiceId=getattr(proposal, f"{stage}_invoice_id"),
                    invoiceLink=getattr(proposal, f"{stage}_invoice_link"),
                    status=getattr(proposal, f"{stage}_status"),
                )
                for stage in STAGE_FRACTIONS
            },
            jobId=str(proposal.job_id) if proposal.job_id is not None else None,
            jobNumber=proposal.job.job_number if proposal.job else None,
            jobAutoCreated=bool(proposal.job_auto_created),
        )
