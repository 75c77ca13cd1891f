"""Settlement router - FastAPI endpoints for proposal approval and stage invoicing"""

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ...database import get_db
from ...services.billcom_service import billcom_client
from ...services.job_stages import JobStageTracker
from ...services.tax_calculator import CountyTaxCalculator
from .invoice_composer import STAGE_FRACTIONS
from .repository import SettlementRepository
from .schemas import SettlementResult, SettlementStatusResponse, StageInvoiceResponse
from .service import SettlementOrchestrator
from .settings import SettlementSettings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/proposals", tags=["Settlement"])


def get_settlement_orchestrator() -> SettlementOrchestrator:
    """Dependency injection for SettlementOrchestrator"""
    return SettlementOrchestrator(
        SettlementSettings.from_env(),
        platform=billcom_client,
        tax_resolver=CountyTaxCalculator(),
        stage_tracker=JobStageTracker(),
    )


def _require_proposal(db: Session, proposal_id: int) -> None:
    if not SettlementRepository.get_proposal(db, proposal_id):
        raise HTTPException(status_code=404, detail="Proposal not found")


@router.post("/{proposal_id}/approve", response_model=SettlementResult)
async def approve_proposal(
    proposal_id: int,
    db: Session = Depends(get_db),
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
):
    """Approve a proposal: deposit invoice, billing customer sync and job merge/create"""
    _require_proposal(db, proposal_id)
    result = await orchestrator.settle(db, proposal_id)
    if result.success:
        logger.info(f"✅ Proposal {proposal_id} approved and settled")
    else:
        logger.warning(f"⚠️ Proposal {proposal_id} approved, settlement {result.outcome.value}: {result.error}")
    return result


@router.post("/{proposal_id}/stage-invoices/{stage}", response_model=StageInvoiceResponse)
async def create_stage_invoice(
    proposal_id: int,
    stage: str,
    db: Session = Depends(get_db),
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
):
    """Create the deposit, rough-in or final invoice for an approved proposal"""
    if stage not in STAGE_FRACTIONS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid stage. Must be one of: {', '.join(STAGE_FRACTIONS)}",
        )
    _require_proposal(db, proposal_id)
    return await orchestrator.invoice_stage(db, proposal_id, stage)


@router.get("/{proposal_id}/settlement", response_model=SettlementStatusResponse)
async def get_settlement_status(
    proposal_id: int,
    db: Session = Depends(get_db),
    orchestrator: SettlementOrchestrator = Depends(get_settlement_orchestrator),
):
    """Stage invoice fields and job link for a proposal"""
    status = orchestrator.get_status(db, proposal_id)
    if status is None:
        raise HTTPException(status_code=404, detail="Proposal not found")
    return status
