"""
Gift cards: codes, validation, redemption, refunds and admin adjustments.
"""
from __future__ import annotations

import re
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from app.enrollsage.audit import record_event
from app.enrollsage.constants import GIFT_CARD_ALPHABET, GIFT_CARD_PREFIX
from app.enrollsage.utils import money

from .models import GiftCard, GiftCardTransaction

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User


GIFT_CARD_STATUSES = ("pending", "active", "depleted", "expired", "disabled")
MAX_GIFT_CARD_AMOUNT = Decimal("500.00")


class GiftCardError(ValueError):
    pass


def generate_gift_card_code() -> str:
    chars = "".join(secrets.choice(GIFT_CARD_ALPHABET) for _ in range(12))
    return f"{GIFT_CARD_PREFIX}-{chars[0:4]}-{chars[4:8]}-{chars[8:12]}"


def unique_gift_card_code(s: "Session") -> str:
    for _ in range(10):
        code = generate_gift_card_code()
        if not s.query(GiftCard.id).filter(GiftCard.code == code).first():
            return code
    raise GiftCardError("Could not generate a unique gift card code.")


def normalize_gift_card_code(code: str | None) -> str:
    """Accept "soap abcd efgh jkmn", "ABCDEFGHJKMN" or the dashed form."""
    raw = re.sub(r"[\s-]", "", (code or "").upper())
    if raw.startswith(GIFT_CARD_PREFIX):
        raw = raw[len(GIFT_CARD_PREFIX):]
    if len(raw) == 12:
        return f"{GIFT_CARD_PREFIX}-{raw[0:4]}-{raw[4:8]}-{raw[8:12]}"
    return (code or "").strip().upper()


def _transaction(
    card: GiftCard,
    type: str,
    amount: Decimal,
    *,
    order_id: int | None = None,
    note: str | None = None,
    user: "User | None" = None,
) -> GiftCardTransaction:
    txn = GiftCardTransaction(
        type=type,
        amount=money(amount),
        balance_after=card.current_balance,
        order_id=order_id,
        note=note,
        created_by_user_id=user.id if user else None,
    )
    card.transactions.append(txn)
    return txn


def create_gift_card(
    s: "Session",
    amount: Decimal,
    user: "User | None",
    *,
    recipient_email: str | None = None,
    recipient_name: str | None = None,
    message: str | None = None,
    expires_in_days: int | None = None,
    purchased: bool = False,
) -> GiftCard:
    """Admin-issued cards are active immediately; purchased cards wait for payment."""
    amount = money(amount)
    if amount <= 0:
        raise GiftCardError("Gift card amount must be greater than zero.")
    if amount > MAX_GIFT_CARD_AMOUNT:
        raise GiftCardError(f"Gift cards are limited to ${MAX_GIFT_CARD_AMOUNT:.2f}.")
    now = datetime.utcnow()
    card = GiftCard(
        code=unique_gift_card_code(s),
        initial_balance=amount,
        current_balance=amount,
        status="pending" if purchased else "active",
        recipient_email=(recipient_email or "").strip().lower() or None,
        recipient_name=(recipient_name or "").strip() or None,
        message=(message or "").strip() or None,
        purchased_by_user_id=user.id if (user and purchased) else None,
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
        activated_at=None if purchased else now,
        created_at=now,
        updated_at=now,
    )
    s.add(card)
    if not purchased:
        _transaction(card, "adjustment", amount, note="Issued by admin", user=user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="giftcard.create",
        entity_type="GiftCard",
        entity_id=str(card.id),
        metadata={"amount": str(amount), "status": card.status},
    )
    return card


def activate_gift_card(s: "Session", card: GiftCard, order_id: int | None = None) -> GiftCard:
    if card.status != "pending":
        raise GiftCardError("Only pending gift cards can be activated.")
    now = datetime.utcnow()
    card.status = "active"
    card.activated_at = now
    card.purchase_order_id = order_id
    card.updated_at = now
    _transaction(card, "purchase", card.initial_balance, order_id=order_id, note="Gift card activated")
    s.flush()
    return card


def validate_gift_card(s: "Session", code: str, now: datetime | None = None) -> GiftCard:
    now = now or datetime.utcnow()
    card = s.query(GiftCard).filter(GiftCard.code == normalize_gift_card_code(code)).one_or_none()
    if card is None:
        raise GiftCardError("Gift card not found")
    if card.status == "disabled":
        raise GiftCardError("This gift card has been disabled")
    if card.status == "expired" or (card.expires_at and card.expires_at < now):
        if card.status != "expired":
            card.status = "expired"
            card.updated_at = now
            s.flush()
        raise GiftCardError("This gift card has expired")
    if card.status == "depleted" or money(card.current_balance) <= 0:
        raise GiftCardError("This gift card has no remaining balance")
    if card.status == "pending":
        raise GiftCardError("This gift card has not been activated")
    return card


def redeem_gift_card(
    s: "Session", card: GiftCard, amount: Decimal, *, order_id: int | None, user: "User | None" = None
) -> Decimal:
    """Returns the amount actually redeemed, capped at the balance."""
    if card.status != "active":
        raise GiftCardError("Gift card not available")
    redeemed = min(money(amount), money(card.current_balance))
    if redeemed <= 0:
        return Decimal("0.00")
    card.current_balance = money(card.current_balance) - redeemed
    if card.current_balance <= 0:
        card.status = "depleted"
    card.updated_at = datetime.utcnow()
    _transaction(card, "redemption", -redeemed, order_id=order_id, note="Redeemed for order", user=user)
    s.flush()
    return redeemed


def refund_to_gift_card(
    s: "Session", card: GiftCard, amount: Decimal, *, order_id: int | None, note: str | None = None
) -> GiftCard:
    amount = money(amount)
    if amount <= 0:
        raise GiftCardError("Refund amount must be greater than zero.")
    card.current_balance = money(card.current_balance) + amount
    if card.status == "depleted":
        card.status = "active"
    card.updated_at = datetime.utcnow()
    _transaction(card, "refund", amount, order_id=order_id, note=note or "Refund from cancelled order")
    s.flush()
    return card


def adjust_gift_card_balance(s: "Session", card: GiftCard, adjustment: Decimal, note: str, user: "User") -> GiftCard:
    note = (note or "").strip()
    if not note:
        raise GiftCardError("A note is required for balance adjustments.")
    if card.status == "disabled":
        raise GiftCardError("Disabled gift cards cannot be adjusted.")
    adjustment = money(adjustment)
    old = money(card.current_balance)
    card.current_balance = max(Decimal("0.00"), old + adjustment)
    if card.status in ("active", "depleted"):
        card.status = "depleted" if card.current_balance <= 0 else "active"
    card.updated_at = datetime.utcnow()
    _transaction(card, "adjustment", card.current_balance - old, note=note, user=user)
    s.flush()
    record_event(
        s,
        actor=user,
        action="giftcard.adjust",
        entity_type="GiftCard",
        entity_id=str(card.id),
        reason=note,
        metadata={"from": str(old), "to": str(card.current_balance)},
    )
    return card


def disable_gift_card(s: "Session", card: GiftCard, user: "User") -> GiftCard:
    if card.status == "disabled":
        return card
    old = card.status
    card.status = "disabled"
    card.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="giftcard.disable",
        entity_type="GiftCard",
        entity_id=str(card.id),
        metadata={"from": old},
    )
    return card
