"""Billing counterparty resolver - finds or creates the customer in the billing platform"""

import asyncio
import logging
import re
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models import Customer
from ...services.billcom_service import BillingPlatform, BillingPlatformError
from ...shared.validators import phone_digits
from .errors import CounterpartyResolutionError
from .schemas import CounterpartyResolution

logger = logging.getLogger(__name__)


def _address_key(address: Optional[str]) -> str:
    return " ".join(re.sub(r"[^\w]+", " ", (address or "").lower()).split())


def address_differs(local: Optional[str], remote: Optional[str]) -> bool:
    """True when the addresses differ beyond case, punctuation or spacing"""
    return _address_key(local) != _address_key(remote)


class BillingCounterpartyResolver:
    """
    Resolves the customer's billing platform record and syncs it back.

    The billing platform is the source of truth for address and phone once a
    customer is linked: tax jurisdiction is decided from the platform's address.
    """

    def __init__(self, platform: BillingPlatform, timeout: float = 30.0):
        self.platform = platform
        self.timeout = timeout

    async def resolve_or_create(
        self,
        db: Session,
        customer: Customer,
        existing_external_id: Optional[str] = None,
    ) -> CounterpartyResolution:
        external_id = customer.billing_customer_id or existing_external_id
        logger.info(
            f"🔎 Resolving billing customer for customer {customer.id} "
            f"({'linked ' + external_id if external_id else 'unlinked'})"
        )

        try:
            record = await asyncio.wait_for(
                self.platform.find_or_create_customer(
                    name=customer.name,
                    email=customer.email,
                    phone=customer.phone,
                    address=customer.address,
                    existing_external_id=external_id,
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"❌ Billing customer lookup timed out for customer {customer.id}")
            raise CounterpartyResolutionError(
                f"Billing platform did not respond within {self.timeout:g}s"
            ) from e
        except (BillingPlatformError, httpx.HTTPError) as e:
            logger.error(f"❌ Billing customer lookup failed for customer {customer.id}: {e}")
            raise CounterpartyResolutionError(str(e)) from e

        changed_fields = []
        if record.address and address_differs(customer.address, record.address):
            logger.info(
                f"📍 Syncing address for customer {customer.id}: "
                f"{customer.address!r} -> {record.address!r}"
            )
            customer.address = record.address
            changed_fields.append("address")

        if record.phone and phone_digits(record.phone) != phone_digits(customer.phone):
            logger.info(f"📞 Syncing phone for customer {customer.id}")
            customer.phone = record.phone
            changed_fields.append("phone")

        customer.billing_customer_id = record.external_id

        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"❌ Failed to save billing customer link for customer {customer.id}: {e}")
            raise CounterpartyResolutionError("Failed to save billing customer link") from e
        db.refresh(customer)

        logger.info(
            f"✅ Customer {customer.id} resolved to billing customer {record.external_id}"
            + (f" (updated {', '.join(changed_fields)})" if changed_fields else "")
        )
        return CounterpartyResolution(
            customer=customer,
            external_id=record.external_id,
            changed=bool(changed_fields),
            changed_fields=changed_fields,
            canonical_address=record.address,
            canonical_phone=record.phone,
        )
