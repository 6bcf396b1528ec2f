"""
Payments service layer.
Stripe customers, saved payment methods, PaymentIntents and webhook handling.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from flask import current_app
from sqlalchemy.exc import IntegrityError

from app.enrollsage.audit import record_event
from app.enrollsage.models import PaymentMethod, User
from app.enrollsage.modules.admissions.models import Application
from app.enrollsage.modules.admissions.service import mark_application_fee_paid
from app.enrollsage.modules.billing.models import Invoice, Payment
from app.enrollsage.modules.billing.service import BillingError, record_payment, refund_payment
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import apply_refund, mark_order_paid, record_payment_failed
from app.enrollsage.utils import money

from .models import StripeEvent
from .stripe_client import StripeError, stripe_from_config

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

# Events to emit after the webhook transaction commits: [(name, payload), ...]
Emits = list[tuple[str, dict[str, Any]]]


def stripe_client(config: dict):
    client = stripe_from_config(config)
    if client is None:
        raise StripeError("Payments are not configured.")
    return client


# ---------- Customers + payment methods ----------
def ensure_stripe_customer(s: "Session", user: User, config: dict) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    customer = stripe_client(config).create_customer(
        email=user.email, name=user.full_name or None, metadata={"user_id": str(user.id)}
    )
    user.stripe_customer_id = customer["id"]
    user.updated_at = datetime.utcnow()
    s.flush()
    return user.stripe_customer_id


def create_setup_intent_for_user(s: "Session", user: User, config: dict) -> dict[str, str]:
    customer = ensure_stripe_customer(s, user, config)
    intent = stripe_client(config).create_setup_intent(customer=customer, metadata={"user_id": str(user.id)})
    return {"client_secret": intent["client_secret"], "setup_intent_id": intent["id"]}


def save_payment_method(s: "Session", user: User, payment_method_id: str, config: dict) -> PaymentMethod:
    existing = (
        s.query(PaymentMethod).filter(PaymentMethod.stripe_payment_method_id == payment_method_id).one_or_none()
    )
    if existing is not None:
        if existing.user_id != user.id:
            raise StripeError("This payment method belongs to another account.")
        return existing
    pm = stripe_client(config).retrieve_payment_method(payment_method_id)
    card = pm.get("card") or {}
    has_default = (
        s.query(PaymentMethod.id).filter(PaymentMethod.user_id == user.id, PaymentMethod.is_default.is_(True)).first()
        is not None
    )
    method = PaymentMethod(
        user_id=user.id,
        stripe_payment_method_id=payment_method_id,
        type=pm.get("type") or "card",
        last4=card.get("last4"),
        brand=card.get("brand"),
        exp_month=card.get("exp_month"),
        exp_year=card.get("exp_year"),
        is_default=not has_default,
    )
    s.add(method)
    s.flush()
    record_event(
        s,
        actor=user,
        action="payment_method.add",
        entity_type="PaymentMethod",
        entity_id=str(method.id),
        metadata={"brand": method.brand, "last4": method.last4},
    )
    return method


def set_default_payment_method(s: "Session", user: User, method: PaymentMethod) -> PaymentMethod:
    if method.user_id != user.id:
        raise StripeError("Payment method not found.")
    for other in s.query(PaymentMethod).filter(PaymentMethod.user_id == user.id).all():
        other.is_default = other.id == method.id
    return method


def remove_payment_method(s: "Session", user: User, method: PaymentMethod, config: dict) -> None:
    if method.user_id != user.id:
        raise StripeError("Payment method not found.")
    stripe_client(config).detach_payment_method(method.stripe_payment_method_id)
    was_default = method.is_default
    s.delete(method)
    s.flush()
    if was_default:
        replacement = (
            s.query(PaymentMethod).filter(PaymentMethod.user_id == user.id).order_by(PaymentMethod.created_at.desc()).first()
        )
        if replacement is not None:
            replacement.is_default = True
    record_event(
        s,
        actor=user,
        action="payment_method.remove",
        entity_type="PaymentMethod",
        entity_id=str(method.id),
        metadata={"last4": method.last4},
    )


# ---------- PaymentIntents ----------
def create_order_payment_intent(s: "Session", order: Order, config: dict, user: User | None = None) -> str:
    customer = ensure_stripe_customer(s, user, config) if user else None
    intent = stripe_client(config).create_payment_intent(
        amount_cents=int(money(order.total) * 100),
        customer=customer,
        metadata={"kind": "order", "order_id": str(order.id), "order_number": order.order_number},
        receipt_email=order.email,
        idempotency_key=f"order-{order.id}",
    )
    order.stripe_payment_intent_id = intent["id"]
    s.flush()
    return intent["client_secret"]


def create_invoice_payment_intent(s: "Session", invoice: Invoice, user: User, config: dict) -> dict[str, Any]:
    if invoice.status not in ("sent", "partially_paid", "overdue", "pending"):
        raise StripeError("This invoice is not open for payment.")
    if invoice.amount_due <= 0:
        raise StripeError("This invoice has nothing due.")
    customer = ensure_stripe_customer(s, user, config)
    intent = stripe_client(config).create_payment_intent(
        amount_cents=invoice.amount_due,
        customer=customer,
        metadata={
            "kind": "invoice",
            "invoice_id": str(invoice.id),
            "invoice_number": invoice.invoice_number,
            "household_id": str(invoice.household_id),
        },
        receipt_email=user.email,
    )
    return {"client_secret": intent["client_secret"], "amount": invoice.amount_due}


def create_application_fee_intent(s: "Session", application: Application, user: User, config: dict) -> dict[str, Any]:
    if application.application_fee_paid:
        raise StripeError("The application fee has already been paid.")
    customer = ensure_stripe_customer(s, user, config)
    intent = stripe_client(config).create_payment_intent(
        amount_cents=application.application_fee_amount,
        customer=customer,
        metadata={"kind": "application_fee", "application_id": str(application.id)},
        receipt_email=user.email,
    )
    return {"client_secret": intent["client_secret"], "amount": application.application_fee_amount}


def refund_payment_intent(payment_intent_id: str, amount_cents: int | None, reason: str | None = None) -> dict[str, Any]:
    return stripe_client(current_app.config).create_refund(
        payment_intent=payment_intent_id, amount_cents=amount_cents, reason=reason
    )


# ---------- Webhooks ----------
def _metadata_id(obj: dict, key: str) -> int | None:
    raw = (obj.get("metadata") or {}).get(key)
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _payment_intent_succeeded(s: "Session", pi: dict, config: dict) -> Emits:
    kind = (pi.get("metadata") or {}).get("kind")
    emits: Emits = []
    if kind == "order":
        order = s.get(Order, _metadata_id(pi, "order_id") or 0)
        if order is None:
            logger.warning("payment_intent.succeeded for unknown order (pi=%s)", pi.get("id"))
            return emits
        if mark_order_paid(s, order, pi.get("id")):
            emits.append(("order.paid", {"order_id": order.id}))
    elif kind == "invoice":
        invoice = s.get(Invoice, _metadata_id(pi, "invoice_id") or 0)
        if invoice is None:
            logger.warning("payment_intent.succeeded for unknown invoice (pi=%s)", pi.get("id"))
            return emits
        amount = int(pi.get("amount_received") or pi.get("amount") or 0)
        already = (
            s.query(Payment.id)
            .filter(Payment.stripe_payment_intent_id == pi.get("id"), Payment.status != "failed")
            .first()
        )
        if already:
            return emits
        if invoice.amount_due <= 0:
            logger.warning("Card payment for settled invoice %s (pi=%s)", invoice.invoice_number, pi.get("id"))
            return emits
        try:
            payment = record_payment(
                s,
                invoice,
                amount=min(amount, invoice.amount_due),
                method="card",
                user=None,
                stripe_payment_intent_id=pi.get("id"),
                stripe_charge_id=pi.get("latest_charge"),
            )
        except BillingError as e:
            logger.warning("Could not record card payment for %s: %s", invoice.invoice_number, e)
            return emits
        emits.append(("payment.received", {"payment_id": payment.id}))
    elif kind == "application_fee":
        application = s.get(Application, _metadata_id(pi, "application_id") or 0)
        if application is not None:
            mark_application_fee_paid(s, application, pi.get("id"))
    else:
        logger.info("payment_intent.succeeded with unrecognised kind=%r", kind)
    return emits


def _record_invoice_card_failure(s: "Session", invoice: Invoice, pi: dict, message: str) -> None:
    """One failed row per intent; retries update it, and a settled intent is left alone."""
    rows = s.query(Payment).filter(Payment.stripe_payment_intent_id == pi.get("id")).all()
    if any(p.status != "failed" for p in rows):
        logger.info("Ignoring failure for already-settled intent %s", pi.get("id"))
        return
    amount = int(pi.get("amount") or 0)
    if rows:
        rows[0].amount = amount
        rows[0].notes = message
        return
    s.add(
        Payment(
            school_id=invoice.school_id,
            household_id=invoice.household_id,
            invoice_id=invoice.id,
            amount=amount,
            method="card",
            status="failed",
            stripe_payment_intent_id=pi.get("id"),
            notes=message,
        )
    )


def _payment_intent_failed(s: "Session", pi: dict, config: dict) -> Emits:
    kind = (pi.get("metadata") or {}).get("kind")
    message = ((pi.get("last_payment_error") or {}).get("message")) or "Payment failed"
    if kind == "order":
        order = s.get(Order, _metadata_id(pi, "order_id") or 0)
        if order is not None:
            record_payment_failed(s, order, message)
    elif kind == "invoice":
        invoice = s.get(Invoice, _metadata_id(pi, "invoice_id") or 0)
        if invoice is not None:
            _record_invoice_card_failure(s, invoice, pi, message)
    return []


def _charge_refunded(s: "Session", charge: dict, config: dict) -> Emits:
    pi_id = charge.get("payment_intent")
    if not pi_id:
        return []
    refunded_total = int(charge.get("amount_refunded") or 0)
    order = s.query(Order).filter(Order.stripe_payment_intent_id == pi_id).one_or_none()
    if order is not None:
        apply_refund(s, order, refunded_total, full=bool(charge.get("refunded")))
    payment = s.query(Payment).filter(Payment.stripe_payment_intent_id == pi_id, Payment.status != "failed").one_or_none()
    if payment is not None:
        delta = refunded_total - (payment.refunded_amount or 0)
        if delta > 0:
            refund_payment(s, payment, delta, None, reason="Refunded in Stripe")
    return []


def _setup_intent_succeeded(s: "Session", si: dict, config: dict) -> Emits:
    user = s.get(User, _metadata_id(si, "user_id") or 0)
    pm_id = si.get("payment_method")
    if user is not None and pm_id:
        save_payment_method(s, user, pm_id, config)
    return []


WEBHOOK_HANDLERS = {
    "payment_intent.succeeded": _payment_intent_succeeded,
    "payment_intent.payment_failed": _payment_intent_failed,
    "charge.refunded": _charge_refunded,
    "setup_intent.succeeded": _setup_intent_succeeded,
}


def handle_webhook_event(s: "Session", event: dict, config: dict) -> tuple[bool, Emits]:
    """Process a verified event once. Returns (processed, emits); processed is False for replays."""
    event_id = event.get("id")
    event_type = event.get("type") or ""
    if not event_id:
        raise StripeError("Event has no id.")
    if s.query(StripeEvent.id).filter(StripeEvent.event_id == event_id).first():
        logger.info("Stripe event %s already processed", event_id)
        return False, []
    s.add(StripeEvent(event_id=event_id, type=event_type))
    try:
        s.flush()
    except IntegrityError:
        s.rollback()
        return False, []

    handler = WEBHOOK_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled Stripe event type %s", event_type)
        return True, []
    obj = (event.get("data") or {}).get("object") or {}
    return True, handler(s, obj, config)
