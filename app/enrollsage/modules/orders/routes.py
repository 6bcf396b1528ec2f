from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, session, url_for

from app.enrollsage.db import db_session
from app.enrollsage.modules.catalog.models import Product
from app.enrollsage.modules.notifications.events import emit
from app.enrollsage.modules.orders.cart import (
    DISCOUNT_KEY,
    GIFT_CARD_KEY,
    add_to_cart,
    clear_cart,
    remove_from_cart,
    summary_for_session,
    update_cart,
)
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import (
    ADDRESS_FIELDS,
    CheckoutError,
    create_order_from_cart,
    mark_order_paid,
    validate_checkout_payload,
)
from app.enrollsage.modules.payments.service import create_order_payment_intent
from app.enrollsage.modules.payments.stripe_client import StripeError
from app.enrollsage.modules.promotions.discounts import normalize_code
from app.enrollsage.modules.promotions.giftcards import normalize_gift_card_code
from app.enrollsage.ratelimit import api_limiter, client_ip

bp = Blueprint("orders", __name__)

LAST_ORDER_KEY = "last_order_id"


def _user():
    return getattr(g, "current_user", None)


def _summary():
    u = _user()
    return summary_for_session(db_session(), session, email=u.email if u else None, user_id=u.id if u else None)


def _back_to_cart_or(default: str) -> str:
    nxt = (request.form.get("next") or "").strip()
    return url_for("orders.checkout_get") if nxt == "checkout" else default


# ---------- Cart ----------
@bp.get("/cart")
def cart():
    return render_template("shop/cart.html", summary=_summary())


@bp.post("/cart/add")
def cart_add():
    s = db_session()
    product = s.get(Product, request.form.get("product_id", type=int) or 0)
    if not product:
        abort(404)
    quantity = request.form.get("quantity", type=int) or 1
    try:
        add_to_cart(session, product, quantity)
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("shop.product_detail", slug=product.slug))
    flash(f"Added {product.name} to your cart.", "success")
    return redirect(url_for("orders.cart"))


@bp.post("/cart/update")
def cart_update():
    product_id = request.form.get("product_id", type=int)
    quantity = request.form.get("quantity", type=int)
    if product_id is None or quantity is None:
        flash("Invalid cart update.", "danger")
        return redirect(url_for("orders.cart"))
    update_cart(session, product_id, quantity)
    return redirect(url_for("orders.cart"))


@bp.post("/cart/remove")
def cart_remove():
    product_id = request.form.get("product_id", type=int)
    if product_id is not None:
        remove_from_cart(session, product_id)
    return redirect(url_for("orders.cart"))


# ---------- Discounts + gift cards ----------
@bp.post("/checkout/discount")
def checkout_discount():
    if request.form.get("action") == "remove":
        session.pop(DISCOUNT_KEY, None)
        flash("Discount code removed.", "info")
        return redirect(_back_to_cart_or(url_for("orders.cart")))
    code = normalize_code(request.form.get("code"))
    if not code:
        flash("Enter a discount code.", "danger")
        return redirect(_back_to_cart_or(url_for("orders.cart")))
    session[DISCOUNT_KEY] = code
    summary = _summary()
    if summary.discount_error:
        session.pop(DISCOUNT_KEY, None)
        flash(summary.discount_error, "danger")
    else:
        flash(summary.discount_message or f"Discount code {code} applied.", "success")
    return redirect(_back_to_cart_or(url_for("orders.cart")))


@bp.post("/checkout/gift-card")
def checkout_gift_card():
    if request.form.get("action") == "remove":
        session.pop(GIFT_CARD_KEY, None)
        flash("Gift card removed.", "info")
        return redirect(_back_to_cart_or(url_for("orders.cart")))
    limit = api_limiter.check(f"giftcard:{client_ip(request)}")
    if not limit.allowed:
        flash("Too many attempts. Please wait a minute and try again.", "danger")
        return redirect(_back_to_cart_or(url_for("orders.cart")))
    code = normalize_gift_card_code(request.form.get("code"))
    if not code:
        flash("Enter a gift card code.", "danger")
        return redirect(_back_to_cart_or(url_for("orders.cart")))
    session[GIFT_CARD_KEY] = code
    summary = _summary()
    if summary.gift_card_error:
        session.pop(GIFT_CARD_KEY, None)
        flash(summary.gift_card_error, "danger")
    else:
        flash(f"Gift card applied: ${summary.gift_card_amount:.2f} off.", "success")
    # Validation can mark an expired card; keep that state.
    db_session().commit()
    return redirect(_back_to_cart_or(url_for("orders.cart")))


# ---------- Checkout ----------
@bp.get("/checkout")
def checkout_get():
    summary = _summary()
    if summary.is_empty:
        flash("Your cart is empty.", "info")
        return redirect(url_for("orders.cart"))
    u = _user()
    default_address = next((a for a in (u.addresses if u else []) if a.is_default), None)
    return render_template(
        "shop/checkout.html",
        summary=summary,
        email=u.email if u else "",
        address=default_address.as_dict() if default_address else {},
    )


@bp.post("/checkout")
def checkout_post():
    s = db_session()
    u = _user()
    payload = {
        "email": request.form.get("email") or (u.email if u else ""),
        "shipping_address": {k: request.form.get(k) for k in ADDRESS_FIELDS},
        "customer_notes": request.form.get("customer_notes"),
    }
    errors = validate_checkout_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("orders.checkout_get"))

    summary = summary_for_session(s, session, email=payload["email"], user_id=u.id if u else None)
    try:
        order = create_order_from_cart(s, summary, payload, u)
    except CheckoutError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("orders.cart"))

    if order.total <= 0:
        mark_order_paid(s, order)
        s.commit()
        clear_cart(session)
        session[LAST_ORDER_KEY] = order.id
        emit("order.paid", {"order_id": order.id})
        return redirect(url_for("orders.checkout_success", order=order.order_number))

    try:
        client_secret = create_order_payment_intent(s, order, current_app.config, u)
    except StripeError as e:
        s.rollback()
        current_app.logger.error("PaymentIntent for checkout failed: %s", e)
        flash("We couldn't start the payment. Please try again.", "danger")
        return redirect(url_for("orders.checkout_get"))
    s.commit()
    clear_cart(session)
    session[LAST_ORDER_KEY] = order.id
    return render_template(
        "shop/pay.html",
        order=order,
        client_secret=client_secret,
        stripe_public_key=current_app.config.get("STRIPE_PUBLIC_KEY"),
    )


@bp.get("/checkout/success")
def checkout_success():
    s = db_session()
    number = (request.args.get("order") or "").strip()
    order = s.query(Order).filter(Order.order_number == number).one_or_none() if number else None
    if order is None and session.get(LAST_ORDER_KEY):
        order = s.get(Order, session[LAST_ORDER_KEY])
    u = _user()
    owns = order is not None and (
        session.get(LAST_ORDER_KEY) == order.id or (u is not None and order.user_id == u.id)
    )
    if not owns:
        abort(404)
    return render_template("shop/success.html", order=order)
