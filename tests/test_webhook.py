import json
import time

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.billing.models import Invoice, Payment
from app.enrollsage.modules.billing.service import create_invoice
from app.enrollsage.modules.catalog.models import Product
from app.enrollsage.modules.families.models import Household
from app.enrollsage.modules.orders.cart import cart_summary
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import create_order_from_cart
from app.enrollsage.modules.payments.models import StripeEvent
from app.enrollsage.modules.payments.stripe_client import StripeSignatureError, compute_signature, construct_event
from app.enrollsage.modules.schools.models import School


def _post_event(app, client, event, secret=None):
    payload = json.dumps(event).encode("utf-8")
    ts = int(time.time())
    sig = compute_signature(payload, ts, secret or app.config["STRIPE_WEBHOOK_SECRET"])
    return client.post(
        "/api/stripe/webhook",
        data=payload,
        headers={"Stripe-Signature": f"t={ts},v1={sig}"},
        content_type="application/json",
    )


def _invoice_id(app):
    with session_scope(app) as s:
        school = s.query(School).filter(School.slug == "westlake-academy").one()
        household = s.query(Household).filter(Household.name == "The Johnson Family").one()
        owner = s.query(User).filter(User.email == "admin@example.com").one()
        items = [{"description": "Tuition", "unit_amount": 80000, "item_type": "tuition"}]
        return create_invoice(s, school, household, items, owner, status="sent").id


def _order_id(app):
    with session_scope(app) as s:
        shea = s.query(Product).filter(Product.slug == "whipped-shea-body-butter").one()
        summary = cart_summary(s, {str(shea.id): 2})
        payload = {"email": "buyer@example.com", "shipping_address": {"name": "B", "line1": "1 A St", "city": "X"}}
        return create_order_from_cart(s, summary, payload, None).id


def test_invoice_payment_is_recorded_once(app, client):
    invoice_id = _invoice_id(app)
    event = {
        "id": "evt_invoice_1",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": "pi_invoice_1",
                "amount": 30000,
                "amount_received": 30000,
                "latest_charge": "ch_1",
                "metadata": {"kind": "invoice", "invoice_id": str(invoice_id)},
            }
        },
    }
    r = _post_event(app, client, event)
    assert r.status_code == 200
    assert r.get_json() == {"received": True, "processed": True}

    r = _post_event(app, client, event)
    assert r.get_json() == {"received": True, "processed": False}

    with session_scope(app) as s:
        invoice = s.get(Invoice, invoice_id)
        assert invoice.amount_paid == 30000
        assert invoice.status == "partially_paid"
        payment = s.query(Payment).one()
        assert payment.method == "card"
        assert payment.stripe_charge_id == "ch_1"
        assert s.query(StripeEvent).count() == 1


def test_same_intent_under_a_new_event_id_is_not_double_counted(app, client):
    invoice_id = _invoice_id(app)
    pi = {"id": "pi_dupe", "amount": 10000, "metadata": {"kind": "invoice", "invoice_id": str(invoice_id)}}
    _post_event(app, client, {"id": "evt_a", "type": "payment_intent.succeeded", "data": {"object": pi}})
    _post_event(app, client, {"id": "evt_b", "type": "payment_intent.succeeded", "data": {"object": pi}})
    with session_scope(app) as s:
        assert s.get(Invoice, invoice_id).amount_due == 70000


def test_declined_then_retried_intent_settles_invoice(app, client):
    invoice_id = _invoice_id(app)
    pi = {
        "id": "pi_retry",
        "amount": 80000,
        "metadata": {"kind": "invoice", "invoice_id": str(invoice_id)},
    }
    declined = {**pi, "last_payment_error": {"message": "Card declined"}}
    _post_event(app, client, {"id": "evt_fail_a", "type": "payment_intent.payment_failed", "data": {"object": declined}})
    _post_event(app, client, {"id": "evt_fail_b", "type": "payment_intent.payment_failed", "data": {"object": declined}})
    with session_scope(app) as s:
        failed = s.query(Payment).one()
        assert failed.status == "failed"
        assert s.get(Invoice, invoice_id).status == "sent"

    succeeded = {**pi, "amount_received": 80000, "latest_charge": "ch_retry"}
    r = _post_event(app, client, {"id": "evt_ok", "type": "payment_intent.succeeded", "data": {"object": succeeded}})
    assert r.get_json() == {"received": True, "processed": True}

    with session_scope(app) as s:
        invoice = s.get(Invoice, invoice_id)
        assert invoice.status == "paid"
        assert invoice.amount_due == 0
        payment = s.query(Payment).one()
        assert payment.status == "succeeded"
        assert payment.amount == 80000
        assert payment.stripe_charge_id == "ch_retry"
        assert payment.notes is None

    # A late failure for the settled intent changes nothing.
    _post_event(app, client, {"id": "evt_fail_c", "type": "payment_intent.payment_failed", "data": {"object": declined}})
    with session_scope(app) as s:
        assert s.query(Payment).one().status == "succeeded"
        assert s.get(Invoice, invoice_id).status == "paid"


def test_order_paid_then_refunded(app, client):
    order_id = _order_id(app)
    r = _post_event(
        app,
        client,
        {
            "id": "evt_order_1",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_order_1", "metadata": {"kind": "order", "order_id": str(order_id)}}},
        },
    )
    assert r.get_json()["processed"] is True
    with session_scope(app) as s:
        order = s.get(Order, order_id)
        assert order.status == "paid"
        assert order.stripe_payment_intent_id == "pi_order_1"
        assert s.query(Product).filter(Product.slug == "whipped-shea-body-butter").one().stock_quantity == 20 - 2
        stock_after_sale = s.query(Product.stock_quantity).filter(Product.slug == "whipped-shea-body-butter").scalar()

    _post_event(
        app,
        client,
        {
            "id": "evt_refund_1",
            "type": "charge.refunded",
            "data": {"object": {"payment_intent": "pi_order_1", "amount_refunded": 4300, "refunded": True}},
        },
    )
    with session_scope(app) as s:
        order = s.get(Order, order_id)
        assert order.status == "refunded"
        shea = s.query(Product).filter(Product.slug == "whipped-shea-body-butter").one()
        assert shea.stock_quantity == stock_after_sale + 2


def test_failed_payment_leaves_order_pending(app, client):
    order_id = _order_id(app)
    _post_event(
        app,
        client,
        {
            "id": "evt_fail_1",
            "type": "payment_intent.payment_failed",
            "data": {
                "object": {
                    "id": "pi_fail",
                    "last_payment_error": {"message": "Card declined"},
                    "metadata": {"kind": "order", "order_id": str(order_id)},
                }
            },
        },
    )
    with session_scope(app) as s:
        order = s.get(Order, order_id)
        assert order.status == "pending"
        assert [e.type for e in order.events] == ["payment_failed", "created"]


def test_bad_signature_is_rejected(app, client):
    r = _post_event(app, client, {"id": "evt_x", "type": "payment_intent.succeeded"}, secret="whsec_wrong")
    assert r.status_code == 400
    assert r.get_json()["success"] is False
    r = client.post("/api/stripe/webhook", data=b"{}", content_type="application/json")
    assert r.status_code == 400
    with session_scope(app) as s:
        assert s.query(StripeEvent).count() == 0


def test_unknown_event_types_are_acknowledged(app, client):
    r = _post_event(app, client, {"id": "evt_misc", "type": "customer.created", "data": {"object": {}}})
    assert r.get_json() == {"received": True, "processed": True}


def test_signature_tolerance():
    payload = b'{"id": "evt_old"}'
    sig = compute_signature(payload, 1_000, "whsec_test")
    with pytest.raises(StripeSignatureError):
        construct_event(payload, f"t=1000,v1={sig}", "whsec_test", now=1_000 + 3600)
    assert construct_event(payload, f"t=1000,v1={sig}", "whsec_test", now=1_010)["id"] == "evt_old"
