from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from app.enrollsage.constants import CENTS


def parse_date(s: str | None) -> date | None:
    """Parse YYYY-MM-DD date string."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    return date.fromisoformat(s)


def parse_datetime(s: str | None) -> datetime | None:
    """Parse an HTML datetime-local value (YYYY-MM-DDTHH:MM) or a bare date."""
    if not s:
        return None
    s = s.strip()
    if not s:
        return None
    if "T" in s or " " in s:
        return datetime.fromisoformat(s)
    return datetime.combine(date.fromisoformat(s), datetime.min.time())


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", (value or "").lower()).strip("-")


def money(value) -> Decimal:
    """Coerce to a 2-place Decimal (dollars)."""
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_money(s: str | None) -> Decimal | None:
    """Parse a form dollar amount like "12.50" or "$1,200". Raises ValueError when malformed."""
    if s is None:
        return None
    s = s.strip().replace("$", "").replace(",", "")
    if not s:
        return None
    try:
        return money(Decimal(s))
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {s}") from e


def dollars_to_cents(s: str | None) -> int | None:
    amount = parse_money(s)
    if amount is None:
        return None
    return int(amount * 100)


def format_cents(cents: int | None) -> str:
    cents = cents or 0
    sign = "-" if cents < 0 else ""
    cents = abs(cents)
    return f"{sign}${cents // 100:,}.{cents % 100:02d}"


def format_money(value) -> str:
    return f"${money(value):,.2f}"


def checkbox(form, name: str) -> bool:
    return (form.get(name) or "").strip().lower() in ("on", "1", "true", "yes")
