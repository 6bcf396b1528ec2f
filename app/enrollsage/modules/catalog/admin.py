from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.enrollsage.db import db_session
from app.enrollsage.models import User
from app.enrollsage.modules.catalog.models import Product, ProductReview
from app.enrollsage.modules.catalog.service import (
    adjust_stock,
    approve_review,
    create_category,
    create_product,
    list_categories,
    low_stock_products,
    pending_reviews,
    reject_review,
    update_product,
    validate_product_payload,
)
from app.enrollsage.rbac import require_shop_admin
from app.enrollsage.utils import checkbox, parse_money

bp = Blueprint("catalog", __name__)


def _current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        raise RuntimeError("No current user")
    return u


def _int_or_none(value: str | None) -> int | None:
    value = (value or "").strip()
    if not value:
        return None
    return int(value)


def _product_payload() -> dict:
    """Form -> payload. Raises ValueError for malformed numbers."""
    images = [line.strip() for line in (request.form.get("images") or "").splitlines() if line.strip()]
    return {
        "name": request.form.get("name"),
        "slug": request.form.get("slug"),
        "description": request.form.get("description"),
        "short_description": request.form.get("short_description"),
        "ingredients": request.form.get("ingredients"),
        "price": parse_money(request.form.get("price")),
        "compare_at_price": parse_money(request.form.get("compare_at_price")),
        "category_id": _int_or_none(request.form.get("category_id")),
        "stock_quantity": _int_or_none(request.form.get("stock_quantity")),
        "low_stock_threshold": _int_or_none(request.form.get("low_stock_threshold")) or 10,
        "weight_oz": parse_money(request.form.get("weight_oz")),
        "sort_order": _int_or_none(request.form.get("sort_order")) or 0,
        "featured": checkbox(request.form, "featured"),
        "is_active": checkbox(request.form, "is_active"),
        "images": images,
    }


# ---------- Products ----------
@bp.get("/admin/products")
@require_shop_admin
def products_list():
    s = db_session()
    search = (request.args.get("q") or "").strip()
    q = s.query(Product)
    if search:
        like = f"%{search}%"
        q = q.filter(Product.name.ilike(like) | Product.slug.ilike(like))
    products = q.order_by(Product.sort_order.asc(), Product.name.asc()).all()
    return render_template(
        "admin/products/list.html",
        products=products,
        search=search,
        low_stock=low_stock_products(s),
        categories=list_categories(s),
    )


@bp.get("/admin/products/new")
@require_shop_admin
def products_new_get():
    return render_template("admin/products/new.html", categories=list_categories(db_session()))


@bp.post("/admin/products/new")
@require_shop_admin
def products_new_post():
    s = db_session()
    try:
        payload = _product_payload()
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("catalog.products_new_get"))
    errors = validate_product_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("catalog.products_new_get"))
    product = create_product(s, payload, _current_user())
    s.commit()
    flash(f"Product '{product.name}' created.", "success")
    return redirect(url_for("catalog.product_detail", product_id=product.id))


@bp.get("/admin/products/<int:product_id>")
@require_shop_admin
def product_detail(product_id: int):
    s = db_session()
    product = s.get(Product, product_id)
    if not product:
        abort(404)
    return render_template("admin/products/detail.html", product=product, categories=list_categories(s))


@bp.post("/admin/products/<int:product_id>/edit")
@require_shop_admin
def product_edit(product_id: int):
    s = db_session()
    product = s.get(Product, product_id)
    if not product:
        abort(404)
    try:
        payload = _product_payload()
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("catalog.product_detail", product_id=product.id))
    # Stock changes go through the stock form so they are audited as adjustments.
    payload.pop("stock_quantity", None)
    errors = validate_product_payload(payload)
    if errors:
        for e in errors:
            flash(e, "danger")
        return redirect(url_for("catalog.product_detail", product_id=product.id))
    update_product(s, product, payload, _current_user())
    s.commit()
    flash("Product updated.", "success")
    return redirect(url_for("catalog.product_detail", product_id=product.id))


@bp.post("/admin/products/<int:product_id>/stock")
@require_shop_admin
def product_stock(product_id: int):
    s = db_session()
    product = s.get(Product, product_id)
    if not product:
        abort(404)
    raw = (request.form.get("delta") or "").strip()
    try:
        delta = int(raw)
    except ValueError:
        flash("Stock adjustment must be a whole number.", "danger")
        return redirect(url_for("catalog.product_detail", product_id=product.id))
    adjust_stock(s, product, delta, _current_user(), reason=(request.form.get("reason") or "").strip() or None)
    s.commit()
    flash(f"Stock for {product.name} is now {product.stock_quantity}.", "success")
    return redirect(url_for("catalog.product_detail", product_id=product.id))


@bp.post("/admin/categories/new")
@require_shop_admin
def category_new():
    s = db_session()
    try:
        cat = create_category(s, request.form.get("name") or "", _current_user(), request.form.get("description"))
    except ValueError as e:
        flash(str(e), "danger")
        return redirect(url_for("catalog.products_list"))
    s.commit()
    flash(f"Category '{cat.name}' created.", "success")
    return redirect(url_for("catalog.products_list"))


# ---------- Reviews ----------
@bp.get("/admin/reviews")
@require_shop_admin
def reviews_list():
    return render_template("admin/reviews/list.html", reviews=pending_reviews(db_session()))


@bp.post("/admin/reviews/<int:review_id>/approve")
@require_shop_admin
def review_approve(review_id: int):
    s = db_session()
    review = s.get(ProductReview, review_id)
    if not review:
        abort(404)
    approve_review(s, review, _current_user())
    s.commit()
    flash("Review approved.", "success")
    return redirect(url_for("catalog.reviews_list"))


@bp.post("/admin/reviews/<int:review_id>/reject")
@require_shop_admin
def review_reject(review_id: int):
    s = db_session()
    review = s.get(ProductReview, review_id)
    if not review:
        abort(404)
    reject_review(s, review, _current_user())
    s.commit()
    flash("Review rejected.", "success")
    return redirect(url_for("catalog.reviews_list"))
