"""
Orders service layer.
Checkout, payment confirmation, fulfilment transitions and the customer rollup.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func

from app.enrollsage.audit import record_event
from app.enrollsage.modules.catalog.models import Product
from app.enrollsage.modules.catalog.service import adjust_stock
from app.enrollsage.modules.promotions.discounts import record_discount_usage
from app.enrollsage.modules.promotions.giftcards import GiftCardError, redeem_gift_card, refund_to_gift_card
from app.enrollsage.modules.promotions.models import DiscountCode, GiftCard
from app.enrollsage.utils import money

from .models import Order, OrderEvent, OrderItem

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User
    from .cart import CartSummary

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("pending", "processing", "paid", "shipped", "delivered", "cancelled", "refunded")
PAID_STATUSES = ("paid", "processing", "shipped", "delivered")
EVENT_TYPES = (
    "created",
    "payment_received",
    "payment_failed",
    "processing",
    "shipped",
    "delivered",
    "cancelled",
    "refunded",
    "note",
    "email_sent",
)
STATUS_TRANSITIONS = {
    "pending": {"cancelled"},
    "paid": {"processing", "shipped", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
    "refunded": set(),
}
CARRIERS = ("USPS", "UPS", "FedEx", "DHL", "Other")
ADDRESS_FIELDS = ("name", "line1", "line2", "city", "state", "postal_code", "country")


class CheckoutError(ValueError):
    pass


class OrderError(ValueError):
    pass


def next_order_number(s: "Session", today: datetime | None = None) -> str:
    today = today or datetime.utcnow()
    prefix = f"KS-{today:%Y%m%d}-"
    count = s.query(func.count(Order.id)).filter(Order.order_number.like(f"{prefix}%")).scalar() or 0
    return f"{prefix}{count + 1:04d}"


def add_order_event(s: "Session", order: Order, type: str, message: str | None = None, user: "User | None" = None) -> OrderEvent:
    if type not in EVENT_TYPES:
        raise OrderError(f"Invalid event type: {type}")
    event = OrderEvent(type=type, message=message, created_by_user_id=user.id if user else None, created_at=datetime.utcnow())
    order.events.append(event)
    s.flush()
    return event


def validate_checkout_payload(payload: dict) -> list[str]:
    errors = []
    email = (payload.get("email") or "").strip()
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    address = payload.get("shipping_address") or {}
    labels = {"name": "Full name", "line1": "Street address", "city": "City", "state": "State", "postal_code": "ZIP code"}
    for key, label in labels.items():
        if not (address.get(key) or "").strip():
            errors.append(f"{label} is required.")
    return errors


def create_order_from_cart(s: "Session", summary: "CartSummary", payload: dict, user: "User | None") -> Order:
    """Build a pending order from a priced cart. Discount and gift card must still be valid."""
    if summary.is_empty:
        raise CheckoutError("Your cart is empty.")
    if summary.discount_error:
        raise CheckoutError(summary.discount_error)
    if summary.gift_card_error:
        raise CheckoutError(summary.gift_card_error)
    for line in summary.lines:
        if line.clamped:
            raise CheckoutError(f"Only {line.quantity} of {line.product.name} left in stock. Please review your cart.")

    address = {k: (payload.get("shipping_address", {}).get(k) or "").strip() for k in ADDRESS_FIELDS}
    address["country"] = address.get("country") or "US"
    now = datetime.utcnow()
    order = Order(
        order_number=next_order_number(s, now),
        user_id=user.id if user else None,
        email=payload["email"].strip().lower(),
        status="pending",
        subtotal=summary.subtotal,
        shipping=summary.shipping,
        tax=summary.tax,
        discount=summary.discount,
        gift_card_amount=summary.gift_card_amount,
        total=summary.total,
        discount_code=summary.discount_code.code if summary.discount_code else None,
        gift_card_code=summary.gift_card.code if summary.gift_card else None,
        shipping_address=address,
        customer_notes=(payload.get("customer_notes") or "").strip() or None,
        created_at=now,
        updated_at=now,
    )
    for line in summary.lines:
        order.items.append(
            OrderItem(
                product_id=line.product.id,
                product_name=line.product.name,
                product_slug=line.product.slug,
                unit_price=line.unit_price,
                quantity=line.quantity,
                line_total=line.line_total,
            )
        )
    s.add(order)
    s.flush()
    add_order_event(s, order, "created", f"Order placed for {order.email}")
    record_event(
        s,
        actor=user,
        action="order.create",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"number": order.order_number, "total": str(order.total)},
    )
    return order


def mark_order_paid(s: "Session", order: Order, payment_intent_id: str | None = None) -> bool:
    """Returns True when the order moved to paid, False if it was already paid."""
    if order.status in PAID_STATUSES or order.status == "refunded":
        return False
    if order.status == "cancelled":
        logger.warning("Payment received for cancelled order %s", order.order_number)
        add_order_event(s, order, "note", "Payment received after cancellation; refund required.")
        return False

    now = datetime.utcnow()
    order.status = "paid"
    order.paid_at = now
    order.updated_at = now
    if payment_intent_id:
        order.stripe_payment_intent_id = payment_intent_id

    for item in order.items:
        if item.product_id is None:
            continue
        product = s.get(Product, item.product_id)
        if product is not None:
            adjust_stock(s, product, -item.quantity, None, reason=f"Order {order.order_number}")

    if order.discount_code:
        code = s.query(DiscountCode).filter(DiscountCode.code == order.discount_code).one_or_none()
        if code is not None:
            record_discount_usage(
                s,
                code,
                order_id=order.id,
                email=order.email,
                user_id=order.user_id,
                amount=order.discount,
            )

    if order.gift_card_code and money(order.gift_card_amount) > 0:
        card = s.query(GiftCard).filter(GiftCard.code == order.gift_card_code).one_or_none()
        try:
            if card is None:
                raise GiftCardError("Gift card not found")
            redeemed = redeem_gift_card(s, card, order.gift_card_amount, order_id=order.id)
            if redeemed < money(order.gift_card_amount):
                add_order_event(s, order, "note", f"Gift card covered ${redeemed:.2f} of ${order.gift_card_amount:.2f}.")
                order.gift_card_amount = redeemed
        except GiftCardError as e:
            logger.warning("Gift card redemption failed for %s: %s", order.order_number, e)
            add_order_event(s, order, "note", f"Gift card redemption failed: {e}")
            order.gift_card_amount = Decimal("0.00")

    add_order_event(s, order, "payment_received", f"Payment of ${money(order.total):.2f} received")
    record_event(
        s,
        actor=None,
        action="order.paid",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"number": order.order_number, "payment_intent_id": payment_intent_id},
    )
    return True


def record_payment_failed(s: "Session", order: Order, message: str | None) -> None:
    add_order_event(s, order, "payment_failed", message or "Payment failed")


def _restock(s: "Session", order: Order, user: "User | None") -> None:
    for item in order.items:
        if item.product_id is None:
            continue
        product = s.get(Product, item.product_id)
        if product is not None:
            adjust_stock(s, product, item.quantity, user, reason=f"Cancelled {order.order_number}")


def _return_gift_card(s: "Session", order: Order) -> None:
    if not order.gift_card_code or money(order.gift_card_amount) <= 0:
        return
    card = s.query(GiftCard).filter(GiftCard.code == order.gift_card_code).one_or_none()
    if card is not None:
        refund_to_gift_card(s, card, order.gift_card_amount, order_id=order.id)


def update_order_status(
    s: "Session",
    order: Order,
    status: str,
    user: "User",
    *,
    tracking_number: str | None = None,
    tracking_carrier: str | None = None,
    note: str | None = None,
) -> Order:
    if status not in ORDER_STATUSES:
        raise OrderError(f"Invalid status. Must be one of: {', '.join(ORDER_STATUSES)}")
    old = order.status
    if status == old:
        return order
    if status not in STATUS_TRANSITIONS.get(old, set()):
        raise OrderError(f"Cannot move an order from {old} to {status}.")

    now = datetime.utcnow()
    if status == "shipped":
        tracking_number = (tracking_number or "").strip()
        if not tracking_number:
            raise OrderError("A tracking number is required to mark an order shipped.")
        order.tracking_number = tracking_number
        order.tracking_carrier = (tracking_carrier or "").strip() or None
        order.shipped_at = now
    elif status == "delivered":
        order.delivered_at = now
    elif status == "cancelled":
        cancel_order(s, order, user, reason=note)
        return order

    order.status = status
    order.updated_at = now
    message = f"Status changed from {old} to {status}"
    if status == "shipped":
        message = f"Shipped via {order.tracking_carrier or 'carrier'}: {order.tracking_number}"
    add_order_event(s, order, status, note or message, user)
    record_event(
        s,
        actor=user,
        action="order.status_change",
        entity_type="Order",
        entity_id=str(order.id),
        reason=note,
        metadata={"from": old, "to": status},
    )
    return order


def cancel_order(s: "Session", order: Order, user: "User | None", reason: str | None = None) -> Order:
    old = order.status
    if "cancelled" not in STATUS_TRANSITIONS.get(old, set()):
        raise OrderError(f"Cannot cancel an order that is {old}.")
    was_paid = old in PAID_STATUSES
    now = datetime.utcnow()
    if was_paid:
        _restock(s, order, user)
        _return_gift_card(s, order)
        charged = money(order.total)
        if order.stripe_payment_intent_id and charged > 0:
            from app.enrollsage.modules.payments.service import refund_payment_intent

            refund_payment_intent(order.stripe_payment_intent_id, int(charged * 100), reason="requested_by_customer")
            add_order_event(s, order, "refunded", f"Refunded ${charged:.2f} to the original payment method", user)

    order.status = "cancelled"
    order.cancelled_at = now
    order.updated_at = now
    add_order_event(s, order, "cancelled", reason or "Order cancelled", user)
    record_event(
        s,
        actor=user,
        action="order.cancel",
        entity_type="Order",
        entity_id=str(order.id),
        reason=reason,
        metadata={"from": old, "refunded": was_paid},
    )
    return order


def apply_refund(s: "Session", order: Order, amount_cents: int, *, full: bool) -> Order:
    """Refund reported by Stripe (charge.refunded)."""
    amount = money(Decimal(amount_cents) / 100)
    if full:
        if order.status not in ("refunded", "cancelled"):
            if order.status in PAID_STATUSES:
                _restock(s, order, None)
                _return_gift_card(s, order)
            order.status = "refunded"
            order.updated_at = datetime.utcnow()
        add_order_event(s, order, "refunded", f"Refunded ${amount:.2f}")
    else:
        add_order_event(s, order, "note", f"Partial refund of ${amount:.2f}")
    record_event(
        s,
        actor=None,
        action="order.refund",
        entity_type="Order",
        entity_id=str(order.id),
        metadata={"amount": str(amount), "full": full},
    )
    return order


def add_order_note(s: "Session", order: Order, note: str, user: "User") -> OrderEvent:
    note = (note or "").strip()
    if not note:
        raise OrderError("Note cannot be empty.")
    return add_order_event(s, order, "note", note, user)


def orders_for_user(s: "Session", user: "User", limit: int | None = None) -> list[Order]:
    q = s.query(Order).filter(Order.user_id == user.id).order_by(Order.created_at.desc())
    if limit:
        q = q.limit(limit)
    return q.all()


def customers_summary(s: "Session", q: str = "") -> list[dict]:
    query = s.query(
        Order.email,
        func.count(Order.id),
        func.coalesce(func.sum(Order.total), 0),
        func.max(Order.created_at),
    ).filter(Order.status.in_(PAID_STATUSES))
    if q:
        query = query.filter(Order.email.ilike(f"%{q}%"))
    rows = query.group_by(Order.email).order_by(func.sum(Order.total).desc()).all()
    return [
        {"email": email, "order_count": count, "total_spent": money(total), "last_order_at": last}
        for email, count, total, last in rows
    ]


def order_stats(s: "Session") -> dict:
    by_status = dict(s.query(Order.status, func.count(Order.id)).group_by(Order.status).all())
    revenue = s.query(func.coalesce(func.sum(Order.total), 0)).filter(Order.status.in_(PAID_STATUSES)).scalar()
    return {
        "by_status": {k: by_status.get(k, 0) for k in ORDER_STATUSES},
        "revenue": money(revenue),
        "to_fulfil": by_status.get("paid", 0) + by_status.get("processing", 0),
    }
