from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, url_for

from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import (
    CARRIERS,
    ORDER_STATUSES,
    STATUS_TRANSITIONS,
    OrderError,
    add_order_note,
    customers_summary,
    order_stats,
    orders_for_user,
    update_order_status,
)
from app.enrollsage.modules.payments.stripe_client import StripeError
from app.enrollsage.rbac import require_shop_admin

bp = Blueprint("orders_admin", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/admin/orders")
@require_shop_admin
def orders_list():
    s = db_session()
    status_filter = (request.args.get("status") or "").strip()
    search = (request.args.get("q") or "").strip()
    q = s.query(Order)
    if status_filter:
        q = q.filter(Order.status == status_filter)
    if search:
        like = f"%{search}%"
        q = q.filter(Order.order_number.ilike(like) | Order.email.ilike(like))
    orders = q.order_by(Order.created_at.desc()).limit(500).all()
    return render_template(
        "admin/orders/list.html",
        orders=orders,
        stats=order_stats(s),
        status_filter=status_filter,
        search=search,
        statuses=ORDER_STATUSES,
    )


@bp.get("/admin/orders/<int:order_id>")
@require_shop_admin
def order_detail(order_id: int):
    order = db_session().get(Order, order_id)
    if not order:
        abort(404)
    return render_template(
        "admin/orders/detail.html",
        order=order,
        next_statuses=sorted(STATUS_TRANSITIONS.get(order.status, set())),
        carriers=CARRIERS,
    )


@bp.post("/admin/orders/<int:order_id>/status")
@require_shop_admin
def order_status(order_id: int):
    s = db_session()
    order = s.get(Order, order_id)
    if not order:
        abort(404)
    try:
        update_order_status(
            s,
            order,
            (request.form.get("status") or "").strip(),
            _current_user(),
            tracking_number=request.form.get("tracking_number"),
            tracking_carrier=request.form.get("tracking_carrier"),
            note=(request.form.get("note") or "").strip() or None,
        )
    except OrderError as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("orders_admin.order_detail", order_id=order.id))
    except StripeError as e:
        s.rollback()
        current_app.logger.error("Refund for order %s failed: %s", order.order_number, e)
        flash(f"Stripe refund failed: {e}", "danger")
        return redirect(url_for("orders_admin.order_detail", order_id=order.id))
    s.commit()
    flash(f"Order {order.order_number} is now {order.status}.", "success")
    return redirect(url_for("orders_admin.order_detail", order_id=order.id))


@bp.post("/admin/orders/<int:order_id>/note")
@require_shop_admin
def order_note(order_id: int):
    s = db_session()
    order = s.get(Order, order_id)
    if not order:
        abort(404)
    try:
        add_order_note(s, order, request.form.get("note") or "", _current_user())
    except OrderError as e:
        flash(str(e), "danger")
        return redirect(url_for("orders_admin.order_detail", order_id=order.id))
    s.commit()
    flash("Note added.", "success")
    return redirect(url_for("orders_admin.order_detail", order_id=order.id))


@bp.get("/admin/customers")
@require_shop_admin
def customers():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    email = (request.args.get("email") or "").strip().lower()
    orders = []
    if email:
        customer = s.query(User).filter(User.email == email).one_or_none()
        orders = (
            orders_for_user(s, customer)
            if customer
            else s.query(Order).filter(Order.email == email).order_by(Order.created_at.desc()).all()
        )
    return render_template(
        "admin/orders/customers.html",
        customers=customers_summary(s, search),
        search=search,
        email=email,
        orders=orders,
    )
