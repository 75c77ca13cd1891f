"""Job resolver - merges an approval into an existing job at the same address or creates one"""

import asyncio
import logging
from datetime import date, datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Customer, Job, Proposal
from ...services.address_matcher import AddressMatch, match_address_to_job
from ...services.job_stages import JobStageTracker
from .errors import JobNumberExhaustedError, JobResolutionError
from .repository import SettlementRepository
from .schemas import InvoiceResult, JobResolution
from .settings import SettlementSettings

logger = logging.getLogger(__name__)

TITLE_SEPARATOR = " + "
UNSCHEDULED_STATUS = "not_scheduled"


def job_number_prefix(day: date) -> str:
    return f"JOB-{day.strftime('%Y%m%d')}-"


def next_job_number(existing: list[str], prefix: str) -> str:
    """Highest sequence for the day + 1, e.g. JOB-20250114-004"""
    highest = 0
    for number in existing:
        sequence = number[len(prefix):]
        if number.startswith(prefix) and sequence.isdigit():
            highest = max(highest, int(sequence))
    return f"{prefix}{highest + 1:03d}"


def is_job_number_conflict(error: IntegrityError) -> bool:
    return "job_number" in str(error.orig).lower()


def proposal_title(proposal: Proposal) -> str:
    return proposal.title or f"Proposal #{proposal.proposal_number}"


def append_invoice_link(links: Optional[list], entry: dict) -> list:
    """New list with entry appended unless its url is already present"""
    links = list(links or [])
    if not any(link.get("url") == entry["url"] for link in links):
        links.append(entry)
    return links


class JobResolver:
    """Resolves the field job for an approved proposal"""

    def __init__(
        self,
        settings: SettlementSettings,
        stage_tracker: Optional[JobStageTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.settings = settings
        self.stage_tracker = stage_tracker
        self.sleep = sleep
        self.clock = clock
        self.repo = SettlementRepository()

    def invoice_link_entry(self, invoice: Optional[InvoiceResult]) -> Optional[dict]:
        if not invoice or not invoice.invoice_link:
            return None
        return {
            "url": invoice.invoice_link,
            "stage": invoice.stage,
            "quantity": float(invoice.stage_fraction) if invoice.stage_fraction is not None else None,
            "invoice_id": invoice.local_invoice_id,
            "billing_invoice_id": invoice.invoice_id,
            "created_at": self.clock().isoformat(),
        }

    def proposal_link(self, proposal: Proposal) -> Optional[str]:
        if not proposal.customer_view_token:
            return None
        return self.settings.proposal_link(proposal.customer_view_token)

    async def resolve_job(
        self,
        db: Session,
        proposal: Proposal,
        customer: Customer,
        invoice: Optional[InvoiceResult],
    ) -> JobResolution:
        """
        Link the proposal to a job.

        Already linked proposals only get the invoice link appended. Otherwise the
        customer's open jobs are matched by service address: a match is merged
        into, no match creates a new job.
        """
        link_entry = self.invoice_link_entry(invoice)

        try:
            if proposal.job_id:
                return self._append_to_linked_job(db, proposal, link_entry)

            if proposal.job_auto_created:
                logger.info(
                    f"⏭️ Proposal #{proposal.proposal_number} already auto-created a job, skipping"
                )
                return JobResolution()

            open_jobs = self.repo.get_active_jobs_for_customer(db, customer.id)
            match = match_address_to_job(
                customer.address,
                [{"id": job.id, "address": job.service_address} for job in open_jobs if job.service_address],
                min_score=self.settings.address_match_min_score,
            )

            if match:
                job = next(job for job in open_jobs if job.id == match.job_id)
                return self._merge(db, proposal, job, match, link_entry)

            logger.info(
                f"🆕 No open job at {customer.address!r} for customer {customer.id}, creating one"
            )
            return await self._create(db, proposal, customer, link_entry)
        except JobResolutionError:
            raise
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Job resolution failed for proposal {proposal.id}: {e}")
            raise JobResolutionError(f"Database error while resolving job: {e}") from e

    def _append_to_linked_job(
        self, db: Session, proposal: Proposal, link_entry: Optional[dict]
    ) -> JobResolution:
        job = self.repo.get_job(db, proposal.job_id)
        if job is None:
            raise JobResolutionError(f"Linked job {proposal.job_id} no longer exists")

        if link_entry:
            links = append_invoice_link(job.invoice_links, link_entry)
            if len(links) != len(job.invoice_links or []):
                job.invoice_links = links
                db.commit()
                logger.info(f"🔗 Added {link_entry['stage']} invoice link to job {job.job_number}")
        return JobResolution(job_id=job.id, job_number=job.job_number, merged=False)

    def _merge(
        self,
        db: Session,
        proposal: Proposal,
        job: Job,
        match: AddressMatch,
        link_entry: Optional[dict],
    ) -> JobResolution:
        title = proposal_title(proposal)
        logger.info(
            f"🔀 Merging proposal #{proposal.proposal_number} into job {job.job_number} "
            f"(score {match.score:.2f}, {match.method}, {match.confidence} confidence)"
        )

        proposal_link = self.proposal_link(proposal)
        if proposal_link and proposal_link not in (job.proposal_links or []):
            job.proposal_links = list(job.proposal_links or []) + [proposal_link]
        if link_entry:
            job.invoice_links = append_invoice_link(job.invoice_links, link_entry)

        job.title = f"{job.title}{TITLE_SEPARATOR}{title}" if job.title else title

        invoice_part = f" with {link_entry['stage']} invoice" if link_entry else ""
        note = f"[{self.clock().isoformat()}] Merged proposal #{proposal.proposal_number}{invoice_part} - {title}"
        job.notes = f"{job.notes}\n\n{note}" if job.notes else note
        job.status = UNSCHEDULED_STATUS

        proposal.job_id = job.id
        proposal.job_auto_created = True
        db.commit()

        logger.info(f"✅ Proposal #{proposal.proposal_number} merged into job {job.job_number}")
        self._initialize_stages(db, job.id)
        return JobResolution(job_id=job.id, job_number=job.job_number, merged=True)

    async def _create(
        self,
        db: Session,
        proposal: Proposal,
        customer: Customer,
        link_entry: Optional[dict],
    ) -> JobResolution:
        proposal_number = proposal.proposal_number
        title = proposal_title(proposal)
        proposal_link = self.proposal_link(proposal)
        service_address = customer.address
        customer_id = customer.id
        prefix = job_number_prefix(self.clock().date())
        max_attempts = self.settings.job_number_max_attempts

        for attempt in range(1, max_attempts + 1):
            job_number = next_job_number(self.repo.get_job_numbers_with_prefix(db, prefix), prefix)
            job = Job(
                job_number=job_number,
                proposal_id=proposal.id,
                customer_id=customer_id,
                title=title,
                job_type="installation",
                status=UNSCHEDULED_STATUS,
                service_address=service_address,
                notes=f"Auto-created from approved proposal #{proposal_number}",
                created_by=self.settings.created_by_user_id,
                proposal_links=[proposal_link] if proposal_link else [],
                invoice_links=[link_entry] if link_entry else [],
            )
            db.add(job)
            try:
                db.flush()
            except IntegrityError as e:
                db.rollback()
                if not is_job_number_conflict(e):
                    raise JobResolutionError(f"Failed to create job: {e.orig}") from e
                logger.warning(
                    f"⚠️ Job number {job_number} already taken (attempt {attempt}/{max_attempts})"
                )
                if attempt < max_attempts:
                    await self.sleep(self.settings.job_number_retry_backoff * attempt)
                continue

            proposal.job_id = job.id
            proposal.job_auto_created = True
            db.commit()

            logger.info(f"✅ Created job {job.job_number} from proposal #{proposal_number}")
            self._initialize_stages(db, job.id)
            return JobResolution(job_id=job.id, job_number=job.job_number, merged=False)

        logger.error(f"❌ Job number allocation exhausted for proposal #{proposal_number}")
        raise JobNumberExhaustedError(max_attempts)

    def _initialize_stages(self, db: Session, job_id: int) -> None:
        """Best effort; a tracking failure never undoes the job"""
        if self.stage_tracker is None:
            return
        try:
            result = self.stage_tracker.initialize(db, job_id, from_proposal=True)
            logger.info(f"📋 Job {job_id} stage tracking initialized at {result.get('initial_stage')}")
        except Exception as e:
            db.rollback()
            logger.warning(f"⚠️ Stage tracking failed for job {job_id}: {e}")
