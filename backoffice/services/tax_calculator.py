"""
Sales Tax Calculator

NC state sales tax plus county tax, county resolved from the ZIP code with the
zipcodes library. Deterministic for a given address; no I/O.
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Protocol

import zipcodes

from ..config import DEFAULT_COUNTY_TAX_RATE, DEFAULT_TAX_STATE, STATE_TAX_RATE
from .address_matcher import PostalAddress

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")
UNKNOWN_COUNTY = "Unknown County"
OUT_OF_STATE = "Out of State"

# Local (county + transit) rate = combined rate - 4.75% state rate
COUNTY_TAX_RATES = {
    "Alamance": Decimal("0.0225"),
    "Buncombe": Decimal("0.0225"),
    "Cumberland": Decimal("0.0225"),
    "Durham": Decimal("0.0275"),
    "Forsyth": Decimal("0.0225"),
    "Guilford": Decimal("0.0200"),
    "Haywood": Decimal("0.0225"),
    "Henderson": Decimal("0.0200"),
    "Mecklenburg": Decimal("0.0250"),
    "New Hanover": Decimal("0.0225"),
    "Orange": Decimal("0.0275"),
    "Transylvania": Decimal("0.0200"),
    "Wake": Decimal("0.0250"),
}


@dataclass(frozen=True)
class TaxBreakdown:
    subtotal: Decimal
    state_tax_rate: Decimal
    county_tax_rate: Decimal
    state_tax_amount: Decimal
    county_tax_amount: Decimal
    county: str

    @property
    def total_tax_rate(self) -> Decimal:
        return self.state_tax_rate + self.county_tax_rate

    @property
    def total_tax_amount(self) -> Decimal:
        return self.state_tax_amount + self.county_tax_amount

    @property
    def total(self) -> Decimal:
        return self.subtotal + self.total_tax_amount


class TaxResolver(Protocol):
    def resolve(self, subtotal: Decimal, address: PostalAddress) -> TaxBreakdown: ...


def to_cents(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENTS, rounding=ROUND_HALF_UP)


def _county_key(county: str) -> str:
    """'Buncombe County' -> 'Buncombe'"""
    county = county.strip()
    if county.lower().endswith(" county"):
        county = county[: -len(" county")]
    return county


class CountyTaxCalculator:
    """Default tax resolver: state rate + county rate looked up by ZIP"""

    def __init__(
        self,
        home_state: str = DEFAULT_TAX_STATE,
        state_tax_rate: Decimal = Decimal(STATE_TAX_RATE),
        default_county_rate: Decimal = Decimal(DEFAULT_COUNTY_TAX_RATE),
        county_rates: Optional[dict[str, Decimal]] = None,
    ):
        self.home_state = home_state.upper()
        self.state_tax_rate = state_tax_rate
        self.default_county_rate = default_county_rate
        self.county_rates = county_rates if county_rates is not None else COUNTY_TAX_RATES

    def lookup_county(self, zip_code: str) -> Optional[str]:
        """County name for a ZIP code, e.g. 'Buncombe County'"""
        if not zip_code:
            return None
        try:
            matches = zipcodes.matching(zip_code[:5])
        except (ValueError, TypeError) as e:
            logger.debug(f"Invalid ZIP code {zip_code}: {e}")
            return None
        if not matches:
            logger.debug(f"ZIP code {zip_code} not found in database")
            return None
        return matches[0].get("county") or None

    def resolve(
        self,
        subtotal: Decimal,
        address: PostalAddress,
        county_override: Optional[str] = None,
    ) -> TaxBreakdown:
        subtotal = to_cents(subtotal)
        state = (address.state or self.home_state).upper()

        if not county_override and state != self.home_state:
            logger.info(f"Out-of-state address ({state}), no {self.home_state} sales tax")
            return TaxBreakdown(
                subtotal=subtotal,
                state_tax_rate=Decimal("0"),
                county_tax_rate=Decimal("0"),
                state_tax_amount=Decimal("0.00"),
                county_tax_amount=Decimal("0.00"),
                county=OUT_OF_STATE,
            )

        county = county_override or self.lookup_county(address.zip)
        county_rate = self.default_county_rate
        if county:
            key = _county_key(county)
            county = f"{key} County"
            if key in self.county_rates:
                county_rate = self.county_rates[key]
            else:
                logger.warning(f"⚠️ No tax rate on file for {county}, using default {county_rate}")
        else:
            logger.warning(f"⚠️ Could not determine county for ZIP {address.zip!r}, using default rate")
            county = UNKNOWN_COUNTY

        return TaxBreakdown(
            subtotal=subtotal,
            state_tax_rate=self.state_tax_rate,
            county_tax_rate=county_rate,
            state_tax_amount=to_cents(subtotal * self.state_tax_rate),
            county_tax_amount=to_cents(subtotal * county_rate),
            county=county,
        )
