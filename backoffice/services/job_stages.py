"""
Job stage tracking
Jobs move through beginning → rough_in → trim_out → closing → completed.
Steps inside a stage are auto-completed from proposal and job data.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Job, Proposal

logger = logging.getLogger(__name__)

JOB_STAGES = ["beginning", "rough_in", "trim_out", "closing", "completed"]
INITIAL_STAGE = JOB_STAGES[0]

# (step id, proposal invoice field, invoice label)
INVOICE_SENT_STEPS = [
    ("deposit_invoice_sent", "deposit_invoice_id", "deposit"),
    ("rough_in_invoice_sent", "roughin_invoice_id", "rough-in"),
    ("final_invoice_sent", "final_invoice_id", "final"),
]


def _complete_step(steps: dict, step_id: str, completed_at: str, notes: str) -> bool:
    """Mark a step completed unless it already is. Returns True if it changed."""
    if (steps.get(step_id) or {}).get("completed"):
        return False
    steps[step_id] = {"completed": True, "completed_at": completed_at, "notes": notes}
    return True


class JobStageTracker:
    """Initializes and auto-completes stage steps on a job"""

    def apply_proposal(self, steps: dict, proposal: Proposal) -> list[str]:
        completed = []
        if proposal.status == "approved" and proposal.approved_at:
            if _complete_step(
                steps,
                "proposal_approved",
                proposal.approved_at.isoformat(),
                "Auto-completed from proposal approval",
            ):
                completed.append("proposal_approved")

        for step_id, field, label in INVOICE_SENT_STEPS:
            invoice_id = getattr(proposal, field)
            if invoice_id and _complete_step(
                steps,
                step_id,
                datetime.utcnow().isoformat(),
                f"Auto-completed from Bill.com {label} invoice ({invoice_id})",
            ):
                completed.append(step_id)
        return completed

    def initialize(self, db: Session, job_id: int, from_proposal: bool = True) -> dict:
        """
        Set the initial stage (if unset) and auto-complete steps.

        Args:
            db: Database session
            job_id: Job to initialize
            from_proposal: Also complete steps from every proposal linked to the job

        Returns:
            dict with initial_stage and steps_completed
        """
        job: Optional[Job] = db.query(Job).filter(Job.id == job_id).first()
        if not job:
            raise ValueError(f"Job {job_id} not found")

        if not job.stage:
            job.stage = INITIAL_STAGE

        steps = dict(job.stage_steps or {})
        completed = []

        if from_proposal:
            proposals = db.query(Proposal).filter(Proposal.job_id == job_id).order_by(Proposal.id).all()
            for proposal in proposals:
                completed.extend(self.apply_proposal(steps, proposal))

        if job.scheduled_date and _complete_step(
            steps,
            "job_scheduled",
            job.scheduled_date.isoformat(),
            "Auto-completed from job scheduled date",
        ):
            completed.append("job_scheduled")

        job.stage_steps = steps
        db.commit()

        if completed:
            logger.info(f"✅ Job {job.job_number}: auto-completed {', '.join(completed)}")
        return {"initial_stage": job.stage, "steps_completed": completed}
