from __future__ import annotations

from flask import Blueprint, current_app, g, jsonify, request

from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.admissions.models import Application
from app.enrollsage.modules.billing.models import Invoice
from app.enrollsage.modules.families.service import guardians_for_user
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.modules.payments.service import (
    create_application_fee_intent,
    create_invoice_payment_intent,
    create_setup_intent_for_user,
    handle_webhook_event,
    save_payment_method,
)
from app.enrollsage.modules.payments.stripe_client import StripeError, StripeSignatureError, construct_event
from app.enrollsage.ratelimit import api_limiter, client_ip

bp = Blueprint("payments", __name__)


def _error(message: str, status: int):
    return jsonify({"success": False, "error": message}), status


def _json_user() -> User | None:
    return getattr(g, "current_user", None)


def _household_ids(user: User) -> set[int]:
    return {gdn.household_id for gdn in guardians_for_user(db_session(), user)}


@bp.post("/api/stripe/webhook")
def stripe_webhook():
    payload = request.get_data()
    try:
        event = construct_event(
            payload,
            request.headers.get("Stripe-Signature"),
            current_app.config.get("STRIPE_WEBHOOK_SECRET") or "",
        )
    except StripeSignatureError as e:
        current_app.logger.warning("Rejected Stripe webhook: %s", e)
        return _error("Invalid signature", 400)

    s = db_session()
    try:
        processed, emits = handle_webhook_event(s, event, current_app.config)
        s.commit()
    except StripeError as e:
        s.rollback()
        return _error(str(e), 400)
    except Exception:
        s.rollback()
        current_app.logger.exception("Stripe webhook %s failed", event.get("id"))
        return _error("Webhook processing failed", 500)

    for name, data in emits:
        emit(name, data)
    return jsonify({"received": True, "processed": processed})


@bp.post("/api/payments/setup-intent")
def setup_intent():
    u = _json_user()
    if u is None:
        return _error("Authentication required", 401)
    s = db_session()
    try:
        data = create_setup_intent_for_user(s, u, current_app.config)
    except StripeError as e:
        s.rollback()
        current_app.logger.error("SetupIntent failed for user %s: %s", u.id, e)
        return _error(str(e), 502)
    s.commit()
    return jsonify({"success": True, **data})


@bp.post("/api/payments/payment-methods")
def payment_method_save():
    u = _json_user()
    if u is None:
        return _error("Authentication required", 401)
    body = request.get_json(silent=True) or {}
    pm_id = (body.get("payment_method_id") or request.form.get("payment_method_id") or "").strip()
    if not pm_id:
        return _error("payment_method_id is required", 400)
    s = db_session()
    try:
        method = save_payment_method(s, u, pm_id, current_app.config)
    except StripeError as e:
        s.rollback()
        return _error(str(e), 400)
    s.commit()
    return jsonify(
        {
            "success": True,
            "payment_method": {
                "id": method.id,
                "brand": method.brand,
                "last4": method.last4,
                "exp_month": method.exp_month,
                "exp_year": method.exp_year,
                "is_default": method.is_default,
            },
        }
    )


@bp.post("/api/payments/invoice/<int:invoice_id>/intent")
def invoice_intent(invoice_id: int):
    u = _json_user()
    if u is None:
        return _error("Authentication required", 401)
    limit = api_limiter.check(f"intent:{client_ip(request)}")
    if not limit.allowed:
        return _error("Too many requests", 429)
    s = db_session()
    invoice = s.get(Invoice, invoice_id)
    if not invoice or invoice.household_id not in _household_ids(u):
        return _error("Invoice not found", 404)
    try:
        data = create_invoice_payment_intent(s, invoice, u, current_app.config)
    except StripeError as e:
        s.rollback()
        return _error(str(e), 400)
    s.commit()
    return jsonify({"success": True, **data})


@bp.post("/api/payments/application/<int:application_id>/intent")
def application_fee_intent(application_id: int):
    u = _json_user()
    if u is None:
        return _error("Authentication required", 401)
    s = db_session()
    application = s.get(Application, application_id)
    if not application or application.household_id not in _household_ids(u):
        return _error("Application not found", 404)
    try:
        data = create_application_fee_intent(s, application, u, current_app.config)
    except StripeError as e:
        s.rollback()
        return _error(str(e), 400)
    s.commit()
    return jsonify({"success": True, **data})
