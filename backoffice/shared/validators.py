"""Shared validation utilities"""

import re
from typing import Optional


def phone_digits(phone: Optional[str]) -> str:
    """
    Reduce a US phone number to its 10 significant digits for comparison.

    Args:
        phone: Phone number string in any format ("(828) 555-0100", "+1 828.555.0100")

    Returns:
        Digits only with a leading US country code dropped; "" for empty input
    """
    if not phone:
        return ""

    digits = re.sub(r"\D", "", phone)

    # Handle +1 prefix
    if digits.startswith("1") and len(digits) == 11:
        digits = digits[1:]

    return digits
