from decimal import Decimal

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.catalog.models import Product
from app.enrollsage.modules.orders.cart import CART_KEY, cart_summary, shipping_for
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import (
    OrderError,
    cancel_order,
    create_order_from_cart,
    mark_order_paid,
    update_order_status,
)
from app.enrollsage.modules.payments import service as payments_service
from app.enrollsage.modules.promotions.discounts import create_discount_code
from app.enrollsage.modules.promotions.giftcards import create_gift_card
from app.enrollsage.modules.promotions.models import DiscountCode, DiscountUsage, GiftCard

ADDRESS = {
    "email": "Buyer@Example.com",
    "name": "Pat Buyer",
    "line1": "12 Elm St",
    "city": "Austin",
    "state": "TX",
    "postal_code": "78701",
    "country": "US",
}


def _product_id(app, slug):
    with session_scope(app) as s:
        return s.query(Product.id).filter(Product.slug == slug).scalar()


def _owner(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def test_storefront_pages(client):
    r = client.get("/shop")
    assert r.status_code == 200
    assert b"Lavender" in r.data
    assert client.get("/shop/lavender-oat-bar").status_code == 200
    assert client.get("/shop/no-such-soap").status_code == 404
    assert client.get("/cart").status_code == 200


def test_cart_quantity_is_clamped_to_stock(app, client, csrf):
    honey = _product_id(app, "honey-almond-bar")
    r = client.post("/cart/add", data={"csrf_token": csrf, "product_id": honey, "quantity": "10"})
    assert r.status_code == 302
    with client.session_transaction() as sess:
        assert sess[CART_KEY] == {str(honey): 6}
    assert client.post("/cart/add", data={"csrf_token": csrf, "product_id": 9999}).status_code == 404

    client.post("/cart/update", data={"csrf_token": csrf, "product_id": honey, "quantity": "0"})
    with client.session_transaction() as sess:
        assert sess[CART_KEY] == {}


def test_shipping_threshold():
    assert shipping_for(Decimal("59.99")) == Decimal("7.00")
    assert shipping_for(Decimal("60.00")) == Decimal("0.00")


def test_cart_summary_applies_discount_then_gift_card(app):
    with session_scope(app) as s:
        owner = _owner(s)
        create_discount_code(s, {"code": "spring10", "type": "percentage", "value": Decimal("10")}, owner)
        card = create_gift_card(s, Decimal("5.00"), owner)
        lavender = s.query(Product).filter(Product.slug == "lavender-oat-bar").one()

        summary = cart_summary(s, {str(lavender.id): 2}, discount_code="SPRING10", gift_card_code=card.code)
        assert summary.subtotal == Decimal("18.00")
        assert summary.discount == Decimal("1.80")
        assert summary.shipping == Decimal("7.00")
        assert summary.gift_card_amount == Decimal("5.00")
        assert summary.total == Decimal("18.20")
        assert summary.item_count == 2
        assert summary.amount_to_free_shipping == Decimal("42.00")

        bad = cart_summary(s, {str(lavender.id): 1}, discount_code="NOPE")
        assert bad.discount_error == "Invalid discount code"
        assert bad.total == Decimal("16.00")


def test_discount_code_from_checkout_form(app, client, csrf):
    with session_scope(app) as s:
        create_discount_code(
            s,
            {"code": "BIG20", "type": "fixed", "value": Decimal("20"), "min_order_amount": Decimal("50.00")},
            _owner(s),
        )
    lavender = _product_id(app, "lavender-oat-bar")
    client.post("/cart/add", data={"csrf_token": csrf, "product_id": lavender, "quantity": "1"})

    r = client.post("/checkout/discount", data={"csrf_token": csrf, "code": "big20"}, follow_redirects=True)
    assert b"Minimum order of $50.00 required" in r.data
    r = client.post("/checkout/discount", data={"csrf_token": csrf, "code": "WHATEVER"}, follow_redirects=True)
    assert b"Invalid discount code" in r.data
    with client.session_transaction() as sess:
        assert "cart_discount" not in sess


def test_gift_card_covers_whole_order(app, client, csrf):
    with session_scope(app) as s:
        card = create_gift_card(s, Decimal("25.00"), _owner(s))
        code = card.code
    lavender = _product_id(app, "lavender-oat-bar")
    client.post("/cart/add", data={"csrf_token": csrf, "product_id": lavender, "quantity": "1"})

    dashed = code.replace("-", " ").lower()
    r = client.post("/checkout/gift-card", data={"csrf_token": csrf, "code": dashed}, follow_redirects=True)
    assert b"Gift card applied: $16.00 off." in r.data

    r = client.post("/checkout", data={"csrf_token": csrf, **ADDRESS})
    assert r.status_code == 302
    assert "/checkout/success" in r.headers["Location"]

    with session_scope(app) as s:
        order = s.query(Order).one()
        assert order.status == "paid"
        assert order.email == "buyer@example.com"
        assert order.total == Decimal("0.00")
        assert order.gift_card_amount == Decimal("16.00")
        assert s.query(Product).filter(Product.slug == "lavender-oat-bar").one().stock_quantity == 47
        card = s.query(GiftCard).filter(GiftCard.code == code).one()
        assert card.current_balance == Decimal("9.00")
        assert card.status == "active"
        number = order.order_number

    with client.session_transaction() as sess:
        assert CART_KEY not in sess
    assert client.get(f"/checkout/success?order={number}").status_code == 200


def test_discount_usage_recorded_on_paid_order(app, client, csrf):
    with session_scope(app) as s:
        owner = _owner(s)
        create_discount_code(s, {"code": "SHIPFREE", "type": "free_shipping", "value": Decimal("0")}, owner)
        code = create_gift_card(s, Decimal("50.00"), owner).code
    lavender = _product_id(app, "lavender-oat-bar")
    client.post("/cart/add", data={"csrf_token": csrf, "product_id": lavender, "quantity": "1"})
    client.post("/checkout/discount", data={"csrf_token": csrf, "code": "SHIPFREE"})
    client.post("/checkout/gift-card", data={"csrf_token": csrf, "code": code})
    client.post("/checkout", data={"csrf_token": csrf, **ADDRESS})

    with session_scope(app) as s:
        order = s.query(Order).one()
        assert order.shipping == Decimal("0.00")
        assert order.discount_code == "SHIPFREE"
        usage = s.query(DiscountUsage).one()
        assert usage.order_id == order.id
        assert usage.email == "buyer@example.com"


def test_paid_checkout_without_stripe_keeps_cart(app, client, csrf):
    lavender = _product_id(app, "lavender-oat-bar")
    client.post("/cart/add", data={"csrf_token": csrf, "product_id": lavender, "quantity": "1"})
    r = client.post("/checkout", data={"csrf_token": csrf, **ADDRESS}, follow_redirects=True)
    assert b"start the payment" in r.data
    with session_scope(app) as s:
        assert s.query(Order).count() == 0
    with client.session_transaction() as sess:
        assert sess[CART_KEY] == {str(lavender): 1}


def test_checkout_validates_address(app, client, csrf):
    lavender = _product_id(app, "lavender-oat-bar")
    client.post("/cart/add", data={"csrf_token": csrf, "product_id": lavender})
    r = client.post("/checkout", data={"csrf_token": csrf, "email": "nope"}, follow_redirects=True)
    assert b"A valid email is required." in r.data
    assert b"ZIP code is required." in r.data


def test_shop_admin_pages(app, client, login, csrf):
    login()
    for path in ("/admin/products", "/admin/orders", "/admin/discounts", "/admin/giftcards", "/admin/customers"):
        assert client.get(path).status_code == 200, path

    r = client.post(
        "/admin/discounts/new",
        data={"csrf_token": csrf, "code": "fall15", "type": "percentage", "value": "15", "max_uses": "100"},
    )
    assert r.status_code == 302
    r = client.post("/admin/giftcards/new", data={"csrf_token": csrf, "amount": "600"}, follow_redirects=True)
    assert b"limited to $500.00" in r.data
    with session_scope(app) as s:
        discount = s.query(DiscountCode).filter(DiscountCode.code == "FALL15").one()
        assert discount.max_uses == 100
        assert s.query(GiftCard).count() == 0


def _paid_order(s, *, gift_card_code=None, pi="pi_shop_1"):
    lavender = s.query(Product).filter(Product.slug == "lavender-oat-bar").one()
    summary = cart_summary(s, {str(lavender.id): 2}, gift_card_code=gift_card_code)
    payload = {"email": "fulfil@example.com", "shipping_address": {"name": "F", "line1": "2 Oak St", "city": "Austin"}}
    order = create_order_from_cart(s, summary, payload, None)
    mark_order_paid(s, order, pi)
    return order, lavender


def test_fulfilment_moves_through_processing_shipped_delivered(app):
    with session_scope(app) as s:
        owner = _owner(s)
        order, lavender = _paid_order(s)
        assert lavender.stock_quantity == 46

        update_order_status(s, order, "processing", owner)
        with pytest.raises(OrderError, match="tracking number"):
            update_order_status(s, order, "shipped", owner, tracking_carrier="USPS")
        update_order_status(s, order, "shipped", owner, tracking_number=" 9400 1 ", tracking_carrier="USPS")
        assert order.tracking_number == "9400 1"
        assert order.shipped_at is not None
        update_order_status(s, order, "delivered", owner)
        assert order.status == "delivered"
        assert order.delivered_at is not None
        s.expire(order, ["events"])
        assert [e.type for e in order.events][:3] == ["delivered", "shipped", "processing"]
        assert order.events[1].message == "Shipped via USPS: 9400 1"

        with pytest.raises(OrderError, match="Cannot move"):
            update_order_status(s, order, "processing", owner)


def test_shipped_order_cannot_be_cancelled(app):
    with session_scope(app) as s:
        owner = _owner(s)
        order, lavender = _paid_order(s)
        update_order_status(s, order, "shipped", owner, tracking_number="1Z999")
        with pytest.raises(OrderError, match="Cannot move"):
            update_order_status(s, order, "cancelled", owner)
        with pytest.raises(OrderError, match="Cannot cancel"):
            cancel_order(s, order, owner)
        assert order.status == "shipped"
        assert lavender.stock_quantity == 46


def test_cancelling_paid_order_restocks_and_refunds(app, monkeypatch):
    refunds = []

    def fake_refund(payment_intent_id, amount_cents, reason=None):
        refunds.append((payment_intent_id, amount_cents, reason))
        return {"id": "re_1", "status": "succeeded"}

    monkeypatch.setattr(payments_service, "refund_payment_intent", fake_refund)
    with session_scope(app) as s:
        owner = _owner(s)
        card = create_gift_card(s, Decimal("5.00"), owner)
        order, lavender = _paid_order(s, gift_card_code=card.code, pi="pi_cancel_me")
        assert card.current_balance == Decimal("0.00")
        assert order.total == Decimal("20.00")

        update_order_status(s, order, "cancelled", owner, note="Customer changed mind")
        assert order.status == "cancelled"
        assert order.cancelled_at is not None
        assert lavender.stock_quantity == 48
        assert card.current_balance == Decimal("5.00")
        assert card.status == "active"
        assert refunds == [("pi_cancel_me", 2000, "requested_by_customer")]
        s.expire(order, ["events"])
        assert [e.type for e in order.events][:2] == ["cancelled", "refunded"]


def test_cancelling_unpaid_order_skips_refund(app, monkeypatch):
    monkeypatch.setattr(payments_service, "refund_payment_intent", lambda *a, **kw: pytest.fail("refund attempted"))
    with session_scope(app) as s:
        owner = _owner(s)
        lavender = s.query(Product).filter(Product.slug == "lavender-oat-bar").one()
        summary = cart_summary(s, {str(lavender.id): 1})
        order = create_order_from_cart(s, summary, {"email": "x@example.com", "shipping_address": {}}, None)
        cancel_order(s, order, owner, reason="Abandoned")
        assert order.status == "cancelled"
        assert lavender.stock_quantity == 48
