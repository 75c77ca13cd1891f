"""Settlement schemas - Typed records validated at the pipeline boundary"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, field_validator, model_validator

from ...models import Customer
from ...services.tax_calculator import to_cents


class TierSnapshot(BaseModel):
    id: int
    tier_level: int
    tier_name: str
    is_selected: bool = False

    class Config:
        from_attributes = True

    @field_validator("tier_level")
    @classmethod
    def validate_tier_level(cls, v: int) -> int:
        if not 1 <= v <= 3:
            raise ValueError("tier_level must be between 1 and 3")
        return v


class LineItemSnapshot(BaseModel):
    """Read-only copy of a proposal line item; total is recomputed from price x quantity"""

    id: int
    tier_id: Optional[int] = None
    name: str
    description: Optional[str] = None
    unit_price: Decimal
    quantity: Decimal
    total_price: Optional[Decimal] = None
    is_addon: bool = False
    is_selected: bool = False

    class Config:
        from_attributes = True

    @model_validator(mode="after")
    def compute_total(self):
        self.total_price = to_cents(self.unit_price * self.quantity)
        return self

    @property
    def included(self) -> bool:
        # Add-ons only count when the customer picked them
        return not self.is_addon or self.is_selected


class ProposalSnapshot(BaseModel):
    id: int
    proposal_number: str
    customer_id: int
    title: Optional[str] = None
    tier_mode: Literal["single", "multi"] = "single"
    status: Optional[str] = None
    customer_view_token: Optional[str] = None
    job_id: Optional[int] = None
    job_auto_created: bool = False
    tiers: list[TierSnapshot] = []
    items: list[LineItemSnapshot] = []

    class Config:
        from_attributes = True

    @field_validator("proposal_number", mode="before")
    @classmethod
    def coerce_proposal_number(cls, v):
        return str(v) if v is not None else v

    @model_validator(mode="after")
    def validate_tiers(self):
        selected = [t for t in self.tiers if t.is_selected]
        if len(selected) > 1:
            raise ValueError("At most one tier can be selected")
        if self.tier_mode == "multi" and not selected:
            raise ValueError("Multi-tier proposal has no selected tier")
        return self

    @property
    def selected_tier(self) -> Optional[TierSnapshot]:
        return next((t for t in self.tiers if t.is_selected), None)


class StageItem(BaseModel):
    """A line item after the stage fraction has been applied"""

    proposal_item_id: int
    name: str
    description: Optional[str] = None
    unit_price: Decimal
    quantity: Decimal
    total_price: Decimal
    stage: str


class InvoiceResult(BaseModel):
    stage: str
    invoice_id: str  # Billing platform invoice id
    invoice_link: Optional[str] = None
    local_invoice_id: Optional[int] = None
    stage_fraction: Optional[Decimal] = None
    reference_number: Optional[str] = None
    subtotal: Optional[Decimal] = None
    state_tax_amount: Optional[Decimal] = None
    county_tax_amount: Optional[Decimal] = None
    county: Optional[str] = None
    total: Optional[Decimal] = None
    reused: bool = False  # True when an existing stage invoice was returned


@dataclass
class CounterpartyResolution:
    """Outcome of syncing a customer with the billing platform"""

    customer: Customer
    external_id: str
    changed: bool = False
    changed_fields: list[str] = field(default_factory=list)
    canonical_address: Optional[str] = None
    canonical_phone: Optional[str] = None


class JobResolution(BaseModel):
    job_id: Optional[int] = None
    job_number: Optional[str] = None
    merged: bool = False


class SettlementOutcome(str, Enum):
    SETTLED = "settled"
    INVOICED_JOB_PENDING = "invoiced_job_pending"
    NOT_INVOICED = "not_invoiced"


class SettlementResult(BaseModel):
    """Result handed to the caller (and the notification emails) after an approval"""

    success: bool
    outcome: SettlementOutcome
    invoiceId: Optional[str] = None
    invoiceLink: Optional[str] = None
    jobId: Optional[str] = None
    jobNumber: Optional[str] = None
    merged: Optional[bool] = None
    error: Optional[str] = None


class StageInvoiceResponse(BaseModel):
    success: bool
    stage: str
    invoiceId: Optional[str] = None
    invoiceLink: Optional[str] = None
    reused: bool = False
    error: Optional[str] = None


class StageInvoiceState(BaseModel):
    invoiceId: Optional[str] = None
    invoiceLink: Optional[str] = None
    status: Optional[str] = None


class SettlementStatusResponse(BaseModel):
    proposalId: int
    proposalNumber: str
    status: Optional[str] = None
    approvedAt: Optional[datetime] = None
    stages: dict[str, StageInvoiceState]
    jobId: Optional[str] = None
    jobNumber: Optional[str] = None
    jobAutoCreated: bool = False
