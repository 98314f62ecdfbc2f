"""Peso amounts: coercion of stored values and extraction from chat text."""
import re
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

_NUMBER = r"(\d[\d,]*(?:\.\d+)?)"

# "₱500", "₱ 1,000", "500 pesos", "1,200.50 PHP", "PHP 1,200.50"
AMOUNT_PATTERN = re.compile(
    rf"(?:₱\s*{_NUMBER})|(?:{_NUMBER}\s*(?:pesos?|php)\b)|(?:\bphp\s*{_NUMBER})",
    re.IGNORECASE,
)


def _decimal(raw: str) -> Optional[Decimal]:
    try:
        return Decimal(raw.replace(",", ""))
    except InvalidOperation:
        return None


def to_amount(value: Any) -> Optional[Decimal]:
    """Coerce a stored or user-supplied amount; ``None`` when it isn't a finite one."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        amount = extract_amount(text)
        if amount is None:
            amount = _decimal(text)
    else:
        return None
    if amount is None or not amount.is_finite():
        return None
    return amount


def extract_amount(text: Optional[str]) -> Optional[Decimal]:
    if not text:
        return None
    match = AMOUNT_PATTERN.search(text)
    if not match:
        return None
    raw = next(group for group in match.groups() if group)
    return _decimal(raw)
