from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.promotions.discounts import (
    DISCOUNT_TYPES,
    DiscountError,
    create_discount_code,
    set_discount_active,
    validate_discount_payload,
)
from app.enrollsage.modules.promotions.giftcards import (
    GiftCardError,
    adjust_gift_card_balance,
    create_gift_card,
    disable_gift_card,
)
from app.enrollsage.modules.promotions.models import DiscountCode, GiftCard
from app.enrollsage.rbac import require_shop_admin
from app.enrollsage.utils import checkbox, parse_datetime, parse_money

bp = Blueprint("promotions", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _int_or_none(value: str | None) -> int | None:
    value = (value or "").strip()
    return int(value) if value else None


# ---------- Discount codes ----------
@bp.get("/admin/discounts")
@require_shop_admin
def discounts_list():
    discounts = db_session().query(DiscountCode).order_by(DiscountCode.created_at.desc()).all()
    return render_template("admin/promotions/discounts.html", discounts=discounts, types=DISCOUNT_TYPES)


@bp.post("/admin/discounts/new")
@require_shop_admin
def discounts_new():
    s = db_session()
    try:
        payload = {
            "code": request.form.get("code"),
            "description": request.form.get("description"),
            "type": (request.form.get("type") or "").strip(),
            "value": parse_money(request.form.get("value")),
            "min_order_amount": parse_money(request.form.get("min_order_amount")),
            "max_discount_amount": parse_money(request.form.get("max_discount_amount")),
            "max_uses": _int_or_none(request.form.get("max_uses")),
            "max_uses_per_customer": _int_or_none(request.form.get("max_uses_per_customer")) or 1,
            "starts_at": parse_datetime(request.form.get("starts_at")),
            "expires_at": parse_datetime(request.form.get("expires_at")),
            "is_active": True,
        }
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("promotions.discounts_list"))
    errors = validate_discount_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("promotions.discounts_list"))
    try:
        discount = create_discount_code(s, payload, _current_user())
    except DiscountError as e:
        flash(str(e), "danger")
        return redirect(url_for("promotions.discounts_list"))
    s.commit()
    flash(f"Discount code {discount.code} created.", "success")
    return redirect(url_for("promotions.discounts_list"))


@bp.post("/admin/discounts/<int:discount_id>/active")
@require_shop_admin
def discounts_toggle(discount_id: int):
    s = db_session()
    discount = s.get(DiscountCode, discount_id)
    if not discount:
        abort(404)
    set_discount_active(s, discount, checkbox(request.form, "active"), _current_user())
    s.commit()
    flash(f"{discount.code} is now {'active' if discount.is_active else 'inactive'}.", "success")
    return redirect(url_for("promotions.discounts_list"))


# ---------- Gift cards ----------
@bp.get("/admin/giftcards")
@require_shop_admin
def giftcards_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(GiftCard)
    if search:
        like = f"%{search}%"
        q = q.filter(GiftCard.code.ilike(like) | GiftCard.recipient_email.ilike(like))
    cards = q.order_by(GiftCard.created_at.desc()).all()
    return render_template("admin/promotions/giftcards.html", cards=cards, search=search)


@bp.post("/admin/giftcards/new")
@require_shop_admin
def giftcards_new():
    s = db_session()
    try:
        amount = parse_money(request.form.get("amount"))
        if amount is None:
            raise GiftCardError("Gift card amount is required.")
        card = create_gift_card(
            s,
            amount,
            _current_user(),
            recipient_email=request.form.get("recipient_email"),
            recipient_name=request.form.get("recipient_name"),
            message=request.form.get("message"),
            expires_in_days=_int_or_none(request.form.get("expires_in_days")),
        )
    except (GiftCardError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("promotions.giftcards_list"))
    s.commit()
    flash(f"Gift card {card.code} issued for ${card.initial_balance:.2f}.", "success")
    return redirect(url_for("promotions.giftcard_detail", card_id=card.id))


@bp.get("/admin/giftcards/<int:card_id>")
@require_shop_admin
def giftcard_detail(card_id: int):
    card = db_session().get(GiftCard, card_id)
    if not card:
        abort(404)
    return render_template("admin/promotions/giftcard_detail.html", card=card)


@bp.post("/admin/giftcards/<int:card_id>/adjust")
@require_shop_admin
def giftcard_adjust(card_id: int):
    s = db_session()
    card = s.get(GiftCard, card_id)
    if not card:
        abort(404)
    try:
        raw = (request.form.get("adjustment") or "").strip()
        negative = raw.startswith("-")
        amount = parse_money(raw.lstrip("-+"))
        if amount is None:
            raise GiftCardError("Adjustment amount is required.")
        adjust_gift_card_balance(s, card, -amount if negative else amount, request.form.get("note") or "", _current_user())
    except (GiftCardError, ValueError) as e:
        s.rollback()
        flash(str(e), "danger")
        return redirect(url_for("promotions.giftcard_detail", card_id=card.id))
    s.commit()
    flash(f"Balance is now ${card.current_balance:.2f}.", "success")
    return redirect(url_for("promotions.giftcard_detail", card_id=card.id))


@bp.post("/admin/giftcards/<int:card_id>/disable")
@require_shop_admin
def giftcard_disable(card_id: int):
    s = db_session()
    card = s.get(GiftCard, card_id)
    if not card:
        abort(404)
    disable_gift_card(s, card, _current_user())
    s.commit()
    flash(f"Gift card {card.code} disabled.", "success")
    return redirect(url_for("promotions.giftcard_detail", card_id=card.id))
