"""
Discount codes: validation, calculation and usage tracking.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.enrollsage.audit import record_event
from app.enrollsage.utils import money

from .models import DiscountCode, DiscountUsage

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User


DISCOUNT_TYPES = ("percentage", "fixed", "free_shipping")


class DiscountError(ValueError):
    pass


@dataclass(frozen=True)
class DiscountResult:
    discount_amount: Decimal  # taken off the subtotal
    shipping: Decimal  # shipping after the discount
    message: str


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def validate_discount(
    s: "Session",
    code: str,
    subtotal: Decimal,
    *,
    email: str | None = None,
    user_id: int | None = None,
    now: datetime | None = None,
) -> DiscountCode:
    """Return the usable code or raise DiscountError with the first failing rule."""
    now = now or datetime.utcnow()
    discount = s.query(DiscountCode).filter(DiscountCode.code == normalize_code(code)).one_or_none()
    if discount is None:
        raise DiscountError("Invalid discount code")
    if not discount.is_active:
        raise DiscountError("This discount code is no longer active")
    if discount.starts_at and discount.starts_at > now:
        raise DiscountError("This discount code is not yet active")
    if discount.expires_at and discount.expires_at < now:
        raise DiscountError("This discount code has expired")
    if discount.max_uses is not None and discount.used_count >= discount.max_uses:
        raise DiscountError("This discount code has reached its usage limit")
    if discount.max_uses_per_customer is not None and (user_id or email):
        q = s.query(func.count(DiscountUsage.id)).filter(DiscountUsage.discount_code_id == discount.id)
        if user_id:
            q = q.filter(DiscountUsage.user_id == user_id)
        else:
            q = q.filter(DiscountUsage.email == email.strip().lower())
        if (q.scalar() or 0) >= discount.max_uses_per_customer:
            raise DiscountError("You have already used this discount code")
    if discount.min_order_amount is not None and money(subtotal) < money(discount.min_order_amount):
        raise DiscountError(f"Minimum order of ${money(discount.min_order_amount):.2f} required for this code")
    return discount


def calculate_discount(discount: DiscountCode, subtotal: Decimal, shipping: Decimal) -> DiscountResult:
    subtotal = money(subtotal)
    shipping = money(shipping)
    if discount.type == "percentage":
        amount = money(subtotal * money(discount.value) / 100)
        if discount.max_discount_amount is not None:
            amount = min(amount, money(discount.max_discount_amount))
        return DiscountResult(amount, shipping, f"{money(discount.value).normalize():f}% off applied")
    if discount.type == "fixed":
        amount = min(money(discount.value), subtotal)
        return DiscountResult(amount, shipping, f"${money(discount.value):.2f} off applied")
    if discount.type == "free_shipping":
        return DiscountResult(Decimal("0.00"), Decimal("0.00"), "Free shipping applied")
    raise DiscountError(f"Unknown discount type: {discount.type}")


def record_discount_usage(
    s: "Session",
    discount: DiscountCode,
    *,
    order_id: int | None,
    email: str,
    user_id: int | None,
    amount: Decimal,
) -> DiscountUsage:
    usage = DiscountUsage(
        discount_code_id=discount.id,
        order_id=order_id,
        user_id=user_id,
        email=email.strip().lower(),
        discount_amount=money(amount),
    )
    s.add(usage)
    discount.used_count = (discount.used_count or 0) + 1
    discount.updated_at = datetime.utcnow()
    s.flush()
    return usage


# ---------- Admin ----------
def validate_discount_payload(payload: dict) -> list[str]:
    errors = []
    code = normalize_code(payload.get("code"))
    if not code:
        errors.append("Code is required.")
    elif not code.replace("-", "").replace("_", "").isalnum():
        errors.append("Code may only contain letters, numbers, dashes and underscores.")
    dtype = payload.get("type")
    if dtype not in DISCOUNT_TYPES:
        errors.append(f"Invalid type. Must be one of: {', '.join(DISCOUNT_TYPES)}")
    value = payload.get("value")
    if dtype in ("percentage", "fixed"):
        if value is None or value <= 0:
            errors.append("Value must be greater than zero.")
        elif dtype == "percentage" and value > 100:
            errors.append("Percentage cannot exceed 100.")
    starts, expires = payload.get("starts_at"), payload.get("expires_at")
    if starts and expires and expires <= starts:
        errors.append("Expiry must be after the start date.")
    return errors


def create_discount_code(s: "Session", payload: dict, user: "User") -> DiscountCode:
    code = normalize_code(payload["code"])
    if s.query(DiscountCode.id).filter(DiscountCode.code == code).first():
        raise DiscountError("A discount code with this code already exists.")
    now = datetime.utcnow()
    discount = DiscountCode(
        code=code,
        description=(payload.get("description") or "").strip() or None,
        type=payload["type"],
        value=money(payload.get("value") or 0),
        min_order_amount=payload.get("min_order_amount"),
        max_discount_amount=payload.get("max_discount_amount"),
        max_uses=payload.get("max_uses"),
        max_uses_per_customer=payload.get("max_uses_per_customer", 1),
        starts_at=payload.get("starts_at"),
        expires_at=payload.get("expires_at"),
        is_active=payload.get("is_active", True),
        used_count=0,
        created_at=now,
        updated_at=now,
    )
    s.add(discount)
    s.flush()
    record_event(
        s,
        actor=user,
        action="discount.create",
        entity_type="DiscountCode",
        entity_id=str(discount.id),
        metadata={"code": code, "type": discount.type, "value": str(discount.value)},
    )
    return discount


def set_discount_active(s: "Session", discount: DiscountCode, active: bool, user: "User") -> DiscountCode:
    if discount.is_active == active:
        return discount
    discount.is_active = active
    discount.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="discount.activate" if active else "discount.deactivate",
        entity_type="DiscountCode",
        entity_id=str(discount.id),
        metadata={"code": discount.code},
    )
    return discount
