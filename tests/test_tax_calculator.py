"""Tests for the county sales tax resolver."""

from decimal import Decimal

import pytest

from backoffice.services.address_matcher import PostalAddress
from backoffice.services.tax_calculator import (
    OUT_OF_STATE,
    UNKNOWN_COUNTY,
    CountyTaxCalculator,
    to_cents,
)


@pytest.fixture
def calculator() -> CountyTaxCalculator:
    return CountyTaxCalculator(
        home_state="NC",
        state_tax_rate=Decimal("0.0475"),
        default_county_rate=Decimal("0.02"),
    )


class TestCountyTaxCalculator:
    """Test suite for state + county tax resolution."""

    def test_deposit_scenario_buncombe(self, calculator: CountyTaxCalculator) -> None:
        """$500 deposit in Buncombe County: 4.75% state + 2.25% county."""
        tax = calculator.resolve(
            Decimal("500.00"), PostalAddress(state="NC", zip="28715"), county_override="Buncombe"
        )

        assert tax.county == "Buncombe County"
        assert tax.state_tax_amount == Decimal("23.75")
        assert tax.county_tax_amount == Decimal("11.25")
        assert tax.total_tax_amount == Decimal("35.00")
        assert tax.total == Decimal("535.00")
        assert tax.total_tax_rate == Decimal("0.0700")

    def test_county_from_zip(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(Decimal("100.00"), PostalAddress(city="Asheville", state="NC", zip="28801"))

        assert tax.county == "Buncombe County"
        assert tax.county_tax_rate == Decimal("0.0225")

    def test_wake_county_rate(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(Decimal("100.00"), PostalAddress(city="Raleigh", state="NC", zip="27601"))

        assert tax.county == "Wake County"
        assert tax.county_tax_amount == Decimal("2.50")

    def test_unknown_county_uses_default_rate(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(Decimal("100.00"), PostalAddress(street="1 Main St", state="NC"))

        assert tax.county == UNKNOWN_COUNTY
        assert tax.county_tax_rate == Decimal("0.02")
        assert tax.county_tax_amount == Decimal("2.00")
        assert tax.state_tax_amount == Decimal("4.75")

    def test_county_without_table_rate_uses_default(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(
            Decimal("100.00"), PostalAddress(state="NC"), county_override="Yancey County"
        )

        assert tax.county == "Yancey County"
        assert tax.county_tax_rate == Decimal("0.02")

    def test_out_of_state_has_no_tax(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(Decimal("250.00"), PostalAddress(city="Greenville", state="SC", zip="29601"))

        assert tax.county == OUT_OF_STATE
        assert tax.total_tax_amount == Decimal("0.00")
        assert tax.total == Decimal("250.00")

    def test_missing_state_defaults_to_home_state(self, calculator: CountyTaxCalculator) -> None:
        tax = calculator.resolve(Decimal("100.00"), PostalAddress(), county_override="Durham")

        assert tax.state_tax_amount == Decimal("4.75")
        assert tax.county_tax_amount == Decimal("2.75")

    def test_deterministic(self, calculator: CountyTaxCalculator) -> None:
        address = PostalAddress(state="NC", zip="28801")

        assert calculator.resolve(Decimal("99.99"), address) == calculator.resolve(Decimal("99.99"), address)

    def test_custom_rate_table(self) -> None:
        calculator = CountyTaxCalculator(county_rates={"Buncombe": Decimal("0.03")})

        tax = calculator.resolve(Decimal("100.00"), PostalAddress(state="NC"), county_override="Buncombe")

        assert tax.county_tax_amount == Decimal("3.00")


@pytest.mark.parametrize(
    "amount,expected",
    [
        (Decimal("0.0475"), Decimal("0.05")),
        (Decimal("0.005"), Decimal("0.01")),
        (Decimal("0.004"), Decimal("0.00")),
        (Decimal("11.245"), Decimal("11.25")),
    ],
)
def test_to_cents_rounds_half_up(amount: Decimal, expected: Decimal) -> None:
    assert to_cents(amount) == expected
