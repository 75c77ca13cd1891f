"""
Bill.com Service
Customer lookup/creation and stage invoice creation against the Bill.com v2 API
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Protocol

import httpx

from ..config import (
    BILLCOM_API_URL,
    BILLCOM_DEV_KEY,
    BILLCOM_INVOICE_DUE_DAYS,
    BILLCOM_INVOICE_URL_BASE,
    BILLCOM_ORG_ID,
    BILLCOM_PASSWORD,
    BILLCOM_USERNAME,
    EXTERNAL_CALL_TIMEOUT_SECONDS,
)
from .address_matcher import parse_address
from .tax_calculator import TaxBreakdown, to_cents

logger = logging.getLogger(__name__)

# Sessions expire after 35 minutes of inactivity
SESSION_TTL = timedelta(minutes=30)

STAGE_LABELS = {"deposit": "Deposit", "roughin": "Rough-in", "final": "Final"}


class BillingPlatformError(Exception):
    """Raised when Bill.com rejects a request or cannot be reached"""

    pass


@dataclass(frozen=True)
class BillingCustomer:
    external_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class BillingInvoice:
    external_invoice_id: str
    customer_facing_url: str
    invoice_number: Optional[str] = None


class BillingPlatform(Protocol):
    async def find_or_create_customer(
        self,
        name: str,
        email: Optional[str],
        phone: Optional[str],
        address: Optional[str],
        existing_external_id: Optional[str] = None,
    ) -> BillingCustomer: ...

    async def create_invoice(
        self,
        customer_external_id: str,
        reference_number: str,
        stage: str,
        stage_fraction: Decimal,
        items: list,
        tax: TaxBreakdown,
    ) -> BillingInvoice: ...


def _join_address(record: dict) -> str:
    """Build 'street, city, ST, zip' from billAddress* fields"""
    parts = [
        record.get("billAddress1"),
        record.get("billAddress2"),
        record.get("billAddressCity"),
        record.get("billAddressState"),
        record.get("billAddressZip"),
    ]
    return ", ".join(p.strip() for p in parts if p and p.strip())


def _to_customer(record: dict) -> BillingCustomer:
    if not record.get("id"):
        raise BillingPlatformError("Bill.com customer record has no id")
    return BillingCustomer(
        external_id=record["id"],
        name=record.get("name", ""),
        email=record.get("email"),
        phone=record.get("phone") or None,
        address=_join_address(record) or None,
    )


class BillcomClient:
    """Thin async client for the Bill.com v2 (form-encoded JSON) API"""

    def __init__(
        self,
        api_url: str = BILLCOM_API_URL,
        dev_key: Optional[str] = BILLCOM_DEV_KEY,
        username: Optional[str] = BILLCOM_USERNAME,
        password: Optional[str] = BILLCOM_PASSWORD,
        org_id: Optional[str] = BILLCOM_ORG_ID,
        invoice_url_base: str = BILLCOM_INVOICE_URL_BASE,
        timeout: float = EXTERNAL_CALL_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.dev_key = dev_key
        self.username = username
        self.password = password
        self.org_id = org_id
        self.invoice_url_base = invoice_url_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport
        self.session_id: Optional[str] = None
        self.session_expiry: Optional[datetime] = None

        if not (dev_key and username and password and org_id):
            logger.warning("BILLCOM credentials not set; invoicing will fail until configured")

    def is_available(self) -> bool:
        return bool(self.dev_key and self.username and self.password and self.org_id)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def authenticate(self) -> str:
        """Log in and cache the session id"""
        if self.session_id and self.session_expiry and self.session_expiry > datetime.utcnow():
            return self.session_id

        if not self.is_available():
            raise BillingPlatformError("Bill.com credentials are not configured")

        try:
            async with self._client() as http_client:
                response = await http_client.post(
                    f"{self.api_url}/Login.json",
                    data={
                        "userName": self.username,
                        "password": self.password,
                        "devKey": self.dev_key,
                        "orgId": self.org_id,
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise BillingPlatformError(f"Bill.com authentication failed: {e}") from e

        payload = self._parse(response, "authentication")
        session_id = payload.get("sessionId")
        if not session_id:
            raise BillingPlatformError("Bill.com authentication failed: No session ID returned")

        self.session_id = session_id
        self.session_expiry = datetime.utcnow() + SESSION_TTL
        return session_id

    def _parse(self, response: httpx.Response, action: str, expected: type = dict) -> Any:
        if response.status_code != 200:
            logger.error(f"Bill.com {action} failed: {response.status_code} {response.text[:500]}")
            raise BillingPlatformError(f"Bill.com {action} failed: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise BillingPlatformError(f"Bill.com {action} returned invalid JSON") from e
        if not isinstance(body, dict):
            raise BillingPlatformError(f"Bill.com {action} returned an unexpected response")

        data = body.get("response_data")
        if body.get("response_status") != 0:
            message = data.get("error_message") if isinstance(data, dict) else None
            raise BillingPlatformError(f"Bill.com {action} failed: {message or 'Unknown error'}")

        # Lists for List/*, objects for Login and Crud/*
        if not isinstance(data, expected):
            logger.error(f"Bill.com {action} returned unexpected response_data: {str(data)[:200]}")
            raise BillingPlatformError(f"Bill.com {action} returned an unexpected response")
        return data

    async def _call(self, endpoint: str, data: dict, action: str, expected: type = dict) -> Any:
        session_id = await self.authenticate()
        try:
            async with self._client() as http_client:
                response = await http_client.post(
                    f"{self.api_url}/{endpoint}",
                    data={
                        "devKey": self.dev_key,
                        "sessionId": session_id,
                        "data": json.dumps(data),
                    },
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise BillingPlatformError(f"Bill.com {action} failed: {e}") from e
        return self._parse(response, action, expected)

    async def get_customer(self, external_id: str) -> BillingCustomer:
        record = await self._call("Crud/Read/Customer.json", {"id": external_id}, "customer read")
        return _to_customer(record)

    async def search_customer(self, name: str, email: str) -> Optional[BillingCustomer]:
        """Active customer matching BOTH email and name (case-insensitive)"""
        records = await self._call(
            "List/Customer.json", {"start": 0, "max": 999}, "customer search", expected=list
        )
        email_key = email.lower()
        name_key = name.lower()

        records = [r for r in records if isinstance(r, dict)]
        for record in records:
            if (
                (record.get("email") or "").lower() == email_key
                and (record.get("name") or "").lower() == name_key
                and record.get("isActive") == "1"
            ):
                logger.info(f"Found existing Bill.com customer: {record.get('name')} ({email})")
                return _to_customer(record)

        if any((r.get("email") or "").lower() == email_key for r in records):
            logger.warning(
                f"⚠️ Email {email} exists on a differently named Bill.com customer; creating a new one"
            )
        return None

    async def create_customer(
        self, name: str, email: str, phone: Optional[str], address: Optional[str]
    ) -> BillingCustomer:
        parsed = parse_address(address)
        customer_obj = {
            "entity": "Customer",
            "isActive": "1",
            "name": name,
            "email": email,
            "phone": phone or "",
            "billAddress1": parsed.street,
            "billAddressCity": parsed.city,
            "billAddressState": parsed.state,
            "billAddressZip": parsed.zip,
        }
        record = await self._call(
            "Crud/Create/Customer.json", {"obj": customer_obj}, "customer creation"
        )
        logger.info(f"✅ Created Bill.com customer {record.get('id')} for {name}")
        return _to_customer(record)

    async def find_or_create_customer(
        self,
        name: str,
        email: Optional[str],
        phone: Optional[str],
        address: Optional[str],
        existing_external_id: Optional[str] = None,
    ) -> BillingCustomer:
        if existing_external_id:
            return await self.get_customer(existing_external_id)

        lookup_email = email or f"{''.join(name.lower().split())}@placeholder.com"
        found = await self.search_customer(name, lookup_email)
        if found:
            return found
        return await self.create_customer(name, lookup_email, phone, address)

    async def create_invoice(
        self,
        customer_external_id: str,
        reference_number: str,
        stage: str,
        stage_fraction: Decimal,
        items: list,
        tax: TaxBreakdown,
    ) -> BillingInvoice:
        """Create a stage invoice: taxable item lines plus state and county tax lines"""
        today = datetime.utcnow().date()
        due_date = today + timedelta(days=BILLCOM_INVOICE_DUE_DAYS)
        stage_label = STAGE_LABELS.get(stage, stage.title())

        line_items = [
            {
                "entity": "InvoiceLineItem",
                "description": f"{item.name} (qty: {item.quantity:.2f})",
                "amount": float(item.total_price),
                "price": float(item.unit_price),
                "quantity": float(item.quantity),
                "taxable": True,
                "taxCode": "Taxable",
            }
            for item in items
        ]

        tax_lines = [
            (f"State Sales Tax ({tax.state_tax_rate * 100:.2f}%)", tax.state_tax_amount),
            (f"{tax.county} Tax ({tax.county_tax_rate * 100:.2f}%)", tax.county_tax_amount),
        ]
        for description, amount in tax_lines:
            line_items.append(
                {
                    "entity": "InvoiceLineItem",
                    "description": f"{description} (qty: {stage_fraction:.2f})",
                    "amount": float(amount),
                    "price": float(to_cents(amount / stage_fraction)) if stage_fraction else 0.0,
                    "quantity": float(stage_fraction),
                    "taxable": False,
                    "taxCode": "Non",
                }
            )

        invoice_obj = {
            "entity": "Invoice",
            "customerId": customer_external_id,
            "invoiceNumber": f"{reference_number}-{stage.upper()}",
            "invoiceDate": today.isoformat(),
            "dueDate": due_date.isoformat(),
            "glPostingDate": today.isoformat(),
            "description": f"{reference_number} - {stage_label} Payment",
            "terms": "Due upon receipt",
            "invoiceLineItems": line_items,
        }

        logger.info(
            f"Creating Bill.com {stage} invoice for {reference_number}: "
            f"{len(items)} items, total {tax.total}"
        )
        record = await self._call("Crud/Create/Invoice.json", {"obj": invoice_obj}, "invoice creation")

        invoice_id = record.get("id")
        if not invoice_id:
            raise BillingPlatformError("Bill.com invoice creation returned no invoice id")

        return BillingInvoice(
            external_invoice_id=invoice_id,
            customer_facing_url=f"{self.invoice_url_base}/{invoice_id}",
            invoice_number=record.get("invoiceNumber"),
        )


billcom_client = BillcomClient()
