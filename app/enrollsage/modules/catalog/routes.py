from __future__ import annotations

from flask import Blueprint, abort, flash, g, redirect, render_template, request, url_for

from app.enrollsage.db import db_session
from app.enrollsage.modules.catalog.models import Product, ProductReview
from app.enrollsage.modules.catalog.service import (
    SORT_OPTIONS,
    ReviewError,
    list_categories,
    mark_helpful,
    product_rating_summary,
    shop_products,
    submit_review,
)
from app.enrollsage.rbac import require_login

bp = Blueprint("shop", __name__)


@bp.get("/shop")
def shop_index():
    s = db_session()
    category = (request.args.get("category") or "").strip()
    search = (request.args.get("q") or "").strip()
    sort = (request.args.get("sort") or "featured").strip()
    if sort not in SORT_OPTIONS:
        sort = "featured"
    return render_template(
        "shop/index.html",
        products=shop_products(s, category=category, q=search, sort=sort),
        categories=list_categories(s),
        category=category,
        search=search,
        sort=sort,
        sort_options=SORT_OPTIONS,
    )


@bp.get("/shop/<slug>")
def product_detail(slug: str):
    s = db_session()
    product = s.query(Product).filter(Product.slug == slug, Product.is_active.is_(True)).one_or_none()
    if not product:
        abort(404)
    reviews = (
        s.query(ProductReview)
        .filter(ProductReview.product_id == product.id, ProductReview.is_approved.is_(True))
        .order_by(ProductReview.helpful_count.desc(), ProductReview.created_at.desc())
        .all()
    )
    return render_template(
        "shop/product.html",
        product=product,
        reviews=reviews,
        rating=product_rating_summary(s, product),
        can_review=getattr(g, "current_user", None) is not None,
    )


@bp.post("/shop/<slug>/reviews")
@require_login
def product_review(slug: str):
    s = db_session()
    product = s.query(Product).filter(Product.slug == slug, Product.is_active.is_(True)).one_or_none()
    if not product:
        abort(404)
    try:
        submit_review(
            s,
            product,
            g.current_user,
            {
                "rating": request.form.get("rating"),
                "title": request.form.get("title"),
                "body": request.form.get("body"),
                "author_name": request.form.get("author_name"),
            },
        )
    except ReviewError as e:
        flash(str(e), "danger")
        return redirect(url_for("shop.product_detail", slug=product.slug))
    s.commit()
    flash("Thanks for your review! It will appear once approved.", "success")
    return redirect(url_for("shop.product_detail", slug=product.slug))


@bp.post("/shop/reviews/<int:review_id>/helpful")
def review_helpful(review_id: int):
    s = db_session()
    review = s.get(ProductReview, review_id)
    if not review or not review.is_approved:
        abort(404)
    mark_helpful(s, review)
    s.commit()
    return redirect(url_for("shop.product_detail", slug=review.product.slug))
