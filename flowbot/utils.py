"""Shared utilities used across the conversation core."""

import re
from datetime import datetime, timezone

CURRENCY_SYMBOLS: dict[str, str] = {
    "USD": "$",
    "MXN": "$",
    "CAD": "$",
    "EUR": "€",
    "GBP": "£",
    "PEN": "S/ ",
}


def normalize_phone(value: str) -> str:
    """Normalize a phone number by stripping everything except digits and a leading +.

    Examples:
        >>> normalize_phone("0412 345 678")
        '0412345678'
        >>> normalize_phone("+1 (415) 555-0100")
        '+14155550100'
    """
    value = value.strip()
    if value.startswith("+"):
        return "+" + re.sub(r"[^\d]", "", value[1:])
    return re.sub(r"[^\d]", "", value)


def format_amount(amount_cents: int, currency: str) -> str:
    """Render an amount in minor units with its currency symbol.

    Examples:
        >>> format_amount(9900, "USD")
        '$99.00'
        >>> format_amount(150000, "eur")
        '€1,500.00'
        >>> format_amount(500, "CLP")
        'CLP 5.00'
    """
    code = (currency or "").upper()
    symbol = CURRENCY_SYMBOLS.get(code, f"{code} " if code else "")
    return f"{symbol}{amount_cents / 100:,.2f}"


def utc_now() -> datetime:
    """Timezone-aware current time, used as the default clock."""
    return datetime.now(timezone.utc)
