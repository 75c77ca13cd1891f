"""
Invoice model - local mirror of invoices created in the billing platform
"""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base


class Invoice(Base):
    """Stage invoice created from an approved proposal"""

    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False)

    job_stage = Column(String(20), nullable=False)  # deposit, roughin, final
    reference_number = Column(String(50), nullable=True)  # JOB-... or PROP-...

    # Pricing
    subtotal = Column(Numeric(12, 2), nullable=False)
    tax_rate = Column(Numeric(6, 4), nullable=False)  # Combined state + county
    tax_amount = Column(Numeric(12, 2), nullable=False)
    state_tax_amount = Column(Numeric(12, 2), nullable=False)
    county_tax_amount = Column(Numeric(12, 2), nullable=False)
    county = Column(String(100), nullable=True)
    total = Column(Numeric(12, 2), nullable=False)

    # Billing platform
    billing_invoice_id = Column(String(100), nullable=False, index=True)
    invoice_link = Column(String(500), nullable=True)

    status = Column(String(50), default="sent")  # sent, paid, void

    created_at = Column(DateTime, server_default=func.now())

    proposal = relationship("Proposal", back_populates="invoices")
