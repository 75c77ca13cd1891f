"""Pytest configuration and shared fixtures."""

import itertools
import os
from datetime import datetime
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backoffice import models_invoice  # noqa: F401
from backoffice.database import Base
from backoffice.domain.settlement.job_resolver import JobResolver
from backoffice.domain.settlement.service import SettlementOrchestrator
from backoffice.domain.settlement.settings import SettlementSettings
from backoffice.models import Customer, Job, Proposal, ProposalItem, ProposalTier
from backoffice.services.address_matcher import PostalAddress
from backoffice.services.billcom_service import BillingCustomer, BillingInvoice
from backoffice.services.job_stages import JobStageTracker
from backoffice.services.tax_calculator import TaxBreakdown, to_cents

FIXED_NOW = datetime(2025, 1, 14, 9, 30, 0)
DEFAULT_ADDRESS = "214 Alta Vista Dr, Candler, NC 28715"


class FakeTaxResolver:
    """Deterministic tax: 4.75% state + 2.25% county, records every address it is asked about"""

    def __init__(
        self,
        state_rate: Decimal = Decimal("0.0475"),
        county_rate: Decimal = Decimal("0.0225"),
        county: str = "Buncombe County",
    ):
        self.state_rate = state_rate
        self.county_rate = county_rate
        self.county = county
        self.calls: list[tuple[Decimal, PostalAddress]] = []

    def resolve(self, subtotal: Decimal, address: PostalAddress) -> TaxBreakdown:
        self.calls.append((subtotal, address))
        subtotal = to_cents(subtotal)
        return TaxBreakdown(
            subtotal=subtotal,
            state_tax_rate=self.state_rate,
            county_tax_rate=self.county_rate,
            state_tax_amount=to_cents(subtotal * self.state_rate),
            county_tax_amount=to_cents(subtotal * self.county_rate),
            county=self.county,
        )


@pytest.fixture
def engine():
    """In-memory SQLite shared across sessions of one test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine) -> Session:
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    yield session
    session.close()


@pytest.fixture
def platform() -> AsyncMock:
    """Fake billing platform.

    Customers echo back what they were given; invoices get sequential ids.

    Returns:
        AsyncMock: platform with find_or_create_customer and create_invoice
    """
    invoice_ids = itertools.count(1)

    def find_or_create_customer(name, email, phone, address, existing_external_id=None):
        return BillingCustomer(
            external_id=existing_external_id or "0cu01CUST",
            name=name,
            email=email,
            phone=phone,
            address=address,
        )

    def create_invoice(customer_external_id, reference_number, stage, stage_fraction, items, tax):
        invoice_id = f"00e01INV{next(invoice_ids):03d}"
        return BillingInvoice(
            external_invoice_id=invoice_id,
            customer_facing_url=f"https://app.bill.com/Invoice/{invoice_id}",
            invoice_number=f"{reference_number}-{stage.upper()}",
        )

    platform = AsyncMock()
    platform.find_or_create_customer.side_effect = find_or_create_customer
    platform.create_invoice.side_effect = create_invoice
    return platform


@pytest.fixture
def tax_resolver() -> FakeTaxResolver:
    return FakeTaxResolver()


@pytest.fixture
def settings() -> SettlementSettings:
    return SettlementSettings(
        public_base_url="https://app.example.com",
        created_by_user_id="admin-user-1",
        address_match_min_score=0.9,
        job_number_max_attempts=3,
        job_number_retry_backoff=0.1,
        external_call_timeout=5.0,
    )


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def job_resolver(settings, sleep) -> JobResolver:
    return JobResolver(
        settings,
        stage_tracker=JobStageTracker(),
        sleep=sleep,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def orchestrator(settings, platform, tax_resolver, job_resolver) -> SettlementOrchestrator:
    return SettlementOrchestrator(
        settings,
        platform=platform,
        tax_resolver=tax_resolver,
        job_resolver=job_resolver,
    )


@pytest.fixture
def make_customer(db):
    def _make(
        name: str = "Dana Whitfield",
        email: Optional[str] = "dana@example.com",
        phone: Optional[str] = "828-555-0100",
        address: Optional[str] = DEFAULT_ADDRESS,
        billing_customer_id: Optional[str] = None,
    ) -> Customer:
        customer = Customer(
            name=name,
            email=email,
            phone=phone,
            address=address,
            billing_customer_id=billing_customer_id,
        )
        db.add(customer)
        db.commit()
        db.refresh(customer)
        return customer

    return _make


@pytest.fixture
def make_proposal(db):
    """Create a proposal with tiers and items.

    items: dicts with name, unit_price, quantity and optional tier (level),
    is_addon, is_selected. tiers: dicts with level, name and selected.
    """
    numbers = itertools.count(1001)

    def _make(
        customer: Customer,
        title: str = "Heat pump installation",
        items: Optional[list[dict]] = None,
        tier_mode: str = "single",
        tiers: Optional[list[dict]] = None,
        **fields,
    ) -> Proposal:
        proposal = Proposal(
            proposal_number=str(next(numbers)),
            customer_id=customer.id,
            title=title,
            tier_mode=tier_mode,
            status=fields.pop("status", "sent"),
            **fields,
        )
        db.add(proposal)
        db.flush()

        tier_ids = {}
        for tier in tiers or []:
            row = ProposalTier(
                proposal_id=proposal.id,
                tier_level=tier["level"],
                tier_name=tier.get("name", f"Tier {tier['level']}"),
                is_selected=tier.get("selected", False),
            )
            db.add(row)
            db.flush()
            tier_ids[tier["level"]] = row.id

        if items is None:
            items = [{"name": "Heat pump system", "unit_price": "1000.00", "quantity": "1"}]
        for item in items:
            unit_price = Decimal(item["unit_price"])
            quantity = Decimal(item.get("quantity", "1"))
            db.add(
                ProposalItem(
                    proposal_id=proposal.id,
                    tier_id=tier_ids.get(item.get("tier")),
                    name=item["name"],
                    description=item.get("description"),
                    unit_price=unit_price,
                    quantity=quantity,
                    total_price=unit_price * quantity,
                    is_addon=item.get("is_addon", False),
                    is_selected=item.get("is_selected", False),
                )
            )

        db.commit()
        db.refresh(proposal)
        return proposal

    return _make


@pytest.fixture
def make_job(db):
    def _make(
        customer: Customer,
        job_number: str = "JOB-20250110-001",
        service_address: Optional[str] = DEFAULT_ADDRESS,
        title: str = "Ductwork replacement",
        status: str = "not_scheduled",
        **fields,
    ) -> Job:
        job = Job(
            job_number=job_number,
            customer_id=customer.id,
            service_address=service_address,
            title=title,
            status=status,
            proposal_links=fields.pop("proposal_links", []),
            invoice_links=fields.pop("invoice_links", []),
            **fields,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    return _make
