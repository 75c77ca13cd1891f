"""Settlement repository - Database operations for the settlement pipeline"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Customer, Job, Proposal
from ...models_invoice import Invoice

# Jobs in these statuses never receive merged work
TERMINAL_JOB_STATUSES = ("cancelled", "archived")


class SettlementRepository:
    """Repository for proposal, customer, job and invoice records touched by settlement"""

    @staticmethod
    def get_proposal(db: Session, proposal_id: int) -> Optional[Proposal]:
        return db.query(Proposal).filter(Proposal.id == proposal_id).first()

    @staticmethod
    def get_customer(db: Session, customer_id: int) -> Optional[Customer]:
        return db.query(Customer).filter(Customer.id == customer_id).first()

    @staticmethod
    def get_job(db: Session, job_id: int) -> Optional[Job]:
        return db.query(Job).filter(Job.id == job_id).first()

    @staticmethod
    def get_active_jobs_for_customer(db: Session, customer_id: int) -> list[Job]:
        """Customer's open jobs, newest first"""
        return (
            db.query(Job)
            .filter(
                Job.customer_id == customer_id,
                Job.status.notin_(TERMINAL_JOB_STATUSES),
            )
            .order_by(Job.created_at.desc(), Job.id.desc())
            .all()
        )

    @staticmethod
    def get_job_numbers_with_prefix(db: Session, prefix: str) -> list[str]:
        """All job numbers starting with prefix, e.g. 'JOB-20250114-'"""
        rows = db.query(Job.job_number).filter(Job.job_number.like(f"{prefix}%")).all()
        return [row[0] for row in rows]

    @staticmethod
    def add_invoice(db: Session, **invoice_data) -> Invoice:
        """Stage an invoice row; the caller commits it with the proposal update"""
        invoice = Invoice(**invoice_data)
        db.add(invoice)
        db.flush()
        return invoice
