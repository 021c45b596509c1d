"""
Phone-number normalisation (E.164) and display formatting for outbound dialing.
Numbers in national format are assumed to be Japanese unless a region is given.
Uses the `phonenumbers` library.
"""

from __future__ import annotations

import phonenumbers
from phonenumbers import PhoneNumberFormat, NumberParseException

# Default region for numbers without a country code
_DEFAULT_REGION = "JP"


def normalise_phone(raw: str, region: str = _DEFAULT_REGION) -> tuple[str, bool]:
    """
    Attempt to normalise a raw phone string to E.164.

    Numbers already carrying a ``+`` prefix keep their country code; national
    numbers (``03-1234-5678``) are parsed against ``region``.

    Returns
    -------
    (e164_string, is_valid)
        e164_string is the formatted number or the original raw string on failure.
        is_valid indicates whether parsing succeeded and the number looks valid.
    """
    cleaned = raw.strip()
    if not cleaned:
        return (raw, False)

    # Long digit strings without a trunk prefix already include the country code
    if cleaned.isdigit() and len(cleaned) > 10 and not cleaned.startswith("0"):
        cleaned = "+" + cleaned

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except NumberParseException:
        return (raw, False)

    if not phonenumbers.is_possible_number(parsed):
        return (raw, False)

    if not phonenumbers.is_valid_number(parsed):
        return (raw, False)

    e164 = phonenumbers.format_number(parsed, PhoneNumberFormat.E164)
    return (e164, True)


def format_for_display(e164: str, region: str = _DEFAULT_REGION) -> str:
    """Format an E.164 number into national format for the operator's screen."""
    try:
        parsed = phonenumbers.parse(e164, region)
        return phonenumbers.format_number(parsed, PhoneNumberFormat.NATIONAL)
    except NumberParseException:
        return e164
