import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


def generate_public_id():
    """Generate a unique public ID for secure public access"""
    return str(uuid.uuid4())


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, index=True)
    phone = Column(String(50), nullable=True)
    # Single-line service address, e.g. "214 Alta Vista Dr, Candler, NC 28715"
    # Overwritten from the billing platform once synced (it decides tax jurisdiction)
    address = Column(String(500), nullable=True)
    billing_customer_id = Column(String(100), nullable=True, index=True)  # Bill.com customer id
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    proposals = relationship("Proposal", back_populates="customer")
    jobs = relationship("Job", back_populates="customer")


class Proposal(Base):
    __tablename__ = "proposals"

    id = Column(Integer, primary_key=True, index=True)
    proposal_number = Column(String(50), unique=True, nullable=False, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    title = Column(String(255), nullable=True)
    tier_mode = Column(String(10), default="single", nullable=False)  # single, multi
    status = Column(String(50), default="draft")  # draft, sent, approved, rejected
    customer_view_token = Column(String(36), unique=True, default=generate_public_id)

    # Pricing snapshot taken when the proposal was sent
    subtotal = Column(Numeric(12, 2), default=0)
    tax_rate = Column(Numeric(6, 4), default=0)
    total = Column(Numeric(12, 2), default=0)

    # Billing counterparty used for this proposal's invoices
    billing_customer_id = Column(String(100), nullable=True)

    # Stage invoices (deposit 50%, rough-in 30%, final 20%)
    deposit_invoice_id = Column(String(100), nullable=True)
    deposit_invoice_link = Column(String(500), nullable=True)
    deposit_status = Column(String(20), nullable=True)  # SENT, FAILED
    roughin_invoice_id = Column(String(100), nullable=True)
    roughin_invoice_link = Column(String(500), nullable=True)
    roughin_status = Column(String(20), nullable=True)
    final_invoice_id = Column(String(100), nullable=True)
    final_invoice_link = Column(String(500), nullable=True)
    final_status = Column(String(20), nullable=True)

    # Job linkage
    job_id = Column(Integer, ForeignKey("jobs.id"), nullable=True)
    job_auto_created = Column(Boolean, default=False, nullable=False)

    notes = Column(Text, nullable=True)
    approved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="proposals")
    tiers = relationship(
        "ProposalTier", back_populates="proposal", order_by="ProposalTier.tier_level"
    )
    items = relationship("ProposalItem", back_populates="proposal", order_by="ProposalItem.id")
    job = relationship("Job", back_populates="proposals")
    invoices = relationship("Invoice", back_populates="proposal")


class ProposalTier(Base):
    __tablename__ = "proposal_tiers"

    id = Column(Integer, primary_key=True, index=True)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False)
    tier_level = Column(Integer, nullable=False)  # 1-3
    tier_name = Column(String(100), nullable=False)  # e.g. Good, Better, Best
    is_selected = Column(Boolean, default=False, nullable=False)

    proposal = relationship("Proposal", back_populates="tiers")


class ProposalItem(Base):
    __tablename__ = "proposal_items"

    id = Column(Integer, primary_key=True, index=True)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False)
    tier_id = Column(Integer, ForeignKey("proposal_tiers.id"), nullable=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    unit_price = Column(Numeric(12, 2), nullable=False)
    quantity = Column(Numeric(12, 4), default=1, nullable=False)
    total_price = Column(Numeric(12, 2), nullable=False)
    is_addon = Column(Boolean, default=False, nullable=False)
    is_selected = Column(Boolean, default=False, nullable=False)  # Only meaningful for add-ons

    proposal = relationship("Proposal", back_populates="items")


class Job(Base):
    __tablename__ = "jobs"

    id = Column(Integer, primary_key=True, index=True)
    job_number = Column(String(30), unique=True, nullable=False, index=True)  # JOB-YYYYMMDD-NNN
    proposal_id = Column(Integer, nullable=True)  # First proposal; proposals.job_id holds the FK
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    title = Column(String(1000), nullable=True)
    job_type = Column(String(50), default="installation")
    # not_scheduled, scheduled, in_progress, completed, cancelled, archived
    status = Column(String(50), default="not_scheduled", nullable=False)
    scheduled_date = Column(DateTime, nullable=True)
    service_address = Column(String(500), nullable=True)
    notes = Column(Text, nullable=True)
    created_by = Column(String(100), nullable=True)

    # Ordered link lists; reassign (never mutate in place) so changes are flushed
    proposal_links = Column(JSON, default=list)
    # Each entry: {url, stage, quantity, invoice_id, billing_invoice_id, created_at}
    invoice_links = Column(JSON, default=list)

    # Stage workflow: beginning, rough_in, trim_out, closing, completed
    stage = Column(String(30), nullable=True)
    stage_steps = Column(JSON, default=dict)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    customer = relationship("Customer", back_populates="jobs")
    proposals = relationship("Proposal", back_populates="job")
