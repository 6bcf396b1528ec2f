from __future__ import annotations

from flask import Blueprint, abort, current_app, flash, g, redirect, render_template, request, session, url_for

from app.enrollsage.db import db_session
from app.enrollsage.google_oauth import google_client_for
from app.enrollsage.models import Address, PaymentMethod, User
from app.enrollsage.modules.account.service import (
    AccountError,
    add_address,
    change_password,
    delete_address,
    google_linked,
    set_default_address,
    unlink_google,
    update_profile,
    validate_address_payload,
)
from app.enrollsage.modules.orders.models import Order
from app.enrollsage.modules.orders.service import orders_for_user
from app.enrollsage.modules.payments.service import remove_payment_method, set_default_payment_method
from app.enrollsage.modules.payments.stripe_client import StripeError
from app.enrollsage.rbac import require_login
from app.enrollsage.utils import checkbox

bp = Blueprint("account", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


@bp.get("/account")
@require_login
def index():
    u = _current_user()
    return render_template("account/index.html", user=u, orders=orders_for_user(db_session(), u, limit=5))


# ---------- Orders ----------
@bp.get("/account/orders")
@require_login
def orders():
    return render_template("account/orders.html", orders=orders_for_user(db_session(), _current_user()))


@bp.get("/account/orders/<int:order_id>")
@require_login
def order_detail(order_id: int):
    order = db_session().get(Order, order_id)
    if not order or order.user_id != _current_user().id:
        abort(404)
    return render_template("account/order_detail.html", order=order)


# ---------- Addresses ----------
@bp.get("/account/addresses")
@require_login
def addresses():
    return render_template("account/addresses.html", addresses=_current_user().addresses)


@bp.post("/account/addresses")
@require_login
def address_add():
    s = db_session()
    payload = {k: request.form.get(k) for k in ("name", "line1", "line2", "city", "state", "postal_code", "country")}
    payload["is_default"] = checkbox(request.form, "is_default")
    errors = validate_address_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("account.addresses"))
    add_address(s, _current_user(), payload)
    s.commit()
    flash("Address saved.", "success")
    return redirect(url_for("account.addresses"))


def _own_address_or_404(address_id: int) -> Address:
    address = db_session().get(Address, address_id)
    if not address or address.user_id != _current_user().id:
        abort(404)
    return address


@bp.post("/account/addresses/<int:address_id>/default")
@require_login
def address_default(address_id: int):
    s = db_session()
    set_default_address(s, _current_user(), _own_address_or_404(address_id))
    s.commit()
    flash("Default address updated.", "success")
    return redirect(url_for("account.addresses"))


@bp.post("/account/addresses/<int:address_id>/delete")
@require_login
def address_delete(address_id: int):
    s = db_session()
    delete_address(s, _current_user(), _own_address_or_404(address_id))
    s.commit()
    flash("Address removed.", "success")
    return redirect(url_for("account.addresses"))


# ---------- Payment methods ----------
@bp.get("/account/payment")
@require_login
def payment():
    return render_template(
        "account/payment.html",
        methods=_current_user().payment_methods,
        stripe_public_key=current_app.config.get("STRIPE_PUBLIC_KEY"),
    )


def _own_method_or_404(method_id: int) -> PaymentMethod:
    method = db_session().get(PaymentMethod, method_id)
    if not method or method.user_id != _current_user().id:
        abort(404)
    return method


@bp.post("/account/payment/<int:method_id>/default")
@require_login
def payment_default(method_id: int):
    s = db_session()
    set_default_payment_method(s, _current_user(), _own_method_or_404(method_id))
    s.commit()
    flash("Default payment method updated.", "success")
    return redirect(url_for("account.payment"))


@bp.post("/account/payment/<int:method_id>/delete")
@require_login
def payment_delete(method_id: int):
    s = db_session()
    try:
        remove_payment_method(s, _current_user(), _own_method_or_404(method_id), current_app.config)
    except StripeError as e:
        s.rollback()
        current_app.logger.error("Detach payment method failed: %s", e)
        flash("We couldn't remove that card. Please try again.", "danger")
        return redirect(url_for("account.payment"))
    s.commit()
    flash("Payment method removed.", "success")
    return redirect(url_for("account.payment"))


# ---------- Settings ----------
@bp.get("/account/settings")
@require_login
def settings_get():
    u = _current_user()
    return render_template(
        "account/settings.html",
        user=u,
        google_account=google_linked(u),
        google_enabled=google_client_for(current_app.config) is not None,
    )


@bp.post("/account/settings/profile")
@require_login
def settings_profile():
    s = db_session()
    try:
        update_profile(
            s,
            _current_user(),
            {
                "first_name": request.form.get("first_name"),
                "last_name": request.form.get("last_name"),
                "phone": request.form.get("phone"),
                "marketing_consent": checkbox(request.form, "marketing_consent"),
            },
        )
    except AccountError as e:
        flash(str(e), "danger")
        return redirect(url_for("account.settings_get"))
    s.commit()
    flash("Profile updated.", "success")
    return redirect(url_for("account.settings_get"))


@bp.post("/account/settings/password")
@require_login
def settings_password():
    s = db_session()
    try:
        revoked = change_password(
            s,
            _current_user(),
            current=request.form.get("current_password") or "",
            new=request.form.get("new_password") or "",
            confirm=request.form.get("confirm_password") or "",
            keep_session_id=session.get("sid"),
        )
    except AccountError as e:
        flash(str(e), "danger")
        return redirect(url_for("account.settings_get"))
    s.commit()
    msg = "Password updated."
    if revoked:
        msg += f" Signed out of {revoked} other session(s)."
    flash(msg, "success")
    return redirect(url_for("account.settings_get"))


@bp.post("/account/settings/google/unlink")
@require_login
def settings_google_unlink():
    s = db_session()
    try:
        unlink_google(s, _current_user())
    except AccountError as e:
        flash(str(e), "danger")
        return redirect(url_for("account.settings_get"))
    s.commit()
    flash("Google account unlinked.", "success")
    return redirect(url_for("account.settings_get"))
