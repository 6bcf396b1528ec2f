from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import func, or_

from app.enrollsage.audit import record_event
from app.enrollsage.utils import money, slugify

from .models import Category, Product, ProductReview

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.models import User


SORT_OPTIONS = {
    "featured": (Product.featured.desc(), Product.sort_order.asc(), Product.name.asc()),
    "price_asc": (Product.price.asc(),),
    "price_desc": (Product.price.desc(),),
    "name": (Product.name.asc(),),
    "newest": (Product.created_at.desc(),),
}


class ReviewError(ValueError):
    pass


def validate_product_payload(payload: dict) -> list[str]:
    """Validate product creation/update payload. Returns list of errors."""
    errors = []
    if not (payload.get("name") or "").strip():
        errors.append("Product name is required.")
    price = payload.get("price")
    if price is None:
        errors.append("Price is required.")
    elif price <= 0:
        errors.append("Price must be greater than zero.")
    compare = payload.get("compare_at_price")
    if compare is not None and price is not None and compare <= price:
        errors.append("Compare-at price must be higher than the price.")
    stock = payload.get("stock_quantity")
    if stock is not None and stock < 0:
        errors.append("Stock quantity cannot be negative.")
    return errors


def _unique_slug(s: "Session", base: str, exclude_id: int | None = None) -> str:
    slug = base
    n = 2
    while True:
        q = s.query(Product.id).filter(Product.slug == slug)
        if exclude_id:
            q = q.filter(Product.id != exclude_id)
        if q.first() is None:
            return slug
        slug = f"{base}-{n}"
        n += 1


def create_product(s: "Session", payload: dict, user: "User") -> Product:
    name = payload["name"].strip()
    base = slugify((payload.get("slug") or "").strip() or name)
    stock = payload.get("stock_quantity") or 0
    now = datetime.utcnow()
    product = Product(
        name=name,
        slug=_unique_slug(s, base),
        description=(payload.get("description") or "").strip() or None,
        short_description=(payload.get("short_description") or "").strip() or None,
        price=money(payload["price"]),
        compare_at_price=money(payload["compare_at_price"]) if payload.get("compare_at_price") else None,
        category_id=payload.get("category_id") or None,
        ingredients=(payload.get("ingredients") or "").strip() or None,
        images=list(payload.get("images") or []),
        stock_quantity=stock,
        in_stock=stock > 0,
        low_stock_threshold=payload.get("low_stock_threshold") or 10,
        weight_oz=payload.get("weight_oz"),
        featured=bool(payload.get("featured")),
        is_active=payload.get("is_active", True),
        sort_order=payload.get("sort_order") or 0,
        created_at=now,
        updated_at=now,
    )
    s.add(product)
    s.flush()
    record_event(
        s,
        actor=user,
        action="product.create",
        entity_type="Product",
        entity_id=str(product.id),
        metadata={"name": name, "price": str(product.price)},
    )
    return product


_TEXT_FIELDS = ("name", "description", "short_description", "ingredients")


def update_product(s: "Session", product: Product, payload: dict, user: "User") -> Product:
    changes = {}
    for key in _TEXT_FIELDS:
        if key not in payload:
            continue
        new = (payload.get(key) or "").strip() or None
        if key == "name" and not new:
            continue
        if new != getattr(product, key):
            changes[key] = {"old": getattr(product, key), "new": new}
            setattr(product, key, new)
    for key in ("price", "compare_at_price"):
        if key in payload:
            new = money(payload[key]) if payload[key] is not None else None
            if key == "price" and new is None:
                continue
            if new != getattr(product, key):
                changes[key] = {"old": str(getattr(product, key)), "new": str(new)}
                setattr(product, key, new)
    for key in ("category_id", "featured", "is_active", "sort_order", "low_stock_threshold", "weight_oz"):
        if key in payload and payload[key] != getattr(product, key):
            changes[key] = {"old": str(getattr(product, key)), "new": str(payload[key])}
            setattr(product, key, payload[key])
    if "images" in payload:
        images = list(payload.get("images") or [])
        if images != (product.images or []):
            changes["images"] = {"old": product.images, "new": images}
            product.images = images
    if "slug" in payload and (payload.get("slug") or "").strip():
        slug = _unique_slug(s, slugify(payload["slug"]), exclude_id=product.id)
        if slug != product.slug:
            changes["slug"] = {"old": product.slug, "new": slug}
            product.slug = slug
    if changes:
        product.updated_at = datetime.utcnow()
        record_event(
            s,
            actor=user,
            action="product.update",
            entity_type="Product",
            entity_id=str(product.id),
            metadata={"changes": changes},
        )
    return product


def adjust_stock(s: "Session", product: Product, delta: int, user: "User | None", reason: str | None = None) -> Product:
    old = product.stock_quantity
    product.stock_quantity = max(0, old + delta)
    product.in_stock = product.stock_quantity > 0
    product.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=user,
        action="product.stock_adjust",
        entity_type="Product",
        entity_id=str(product.id),
        reason=reason,
        metadata={"from": old, "to": product.stock_quantity, "delta": delta},
    )
    return product


def low_stock_products(s: "Session") -> list[Product]:
    return (
        s.query(Product)
        .filter(Product.is_active.is_(True), Product.stock_quantity <= Product.low_stock_threshold)
        .order_by(Product.stock_quantity.asc(), Product.name.asc())
        .all()
    )


def list_categories(s: "Session") -> list[Category]:
    return s.query(Category).order_by(Category.sort_order.asc(), Category.name.asc()).all()


def create_category(s: "Session", name: str, user: "User", description: str | None = None) -> Category:
    name = (name or "").strip()
    if not name:
        raise ValueError("Category name is required.")
    slug = slugify(name)
    if s.query(Category.id).filter(Category.slug == slug).first():
        raise ValueError("A category with this name already exists.")
    cat = Category(name=name, slug=slug, description=(description or "").strip() or None)
    s.add(cat)
    s.flush()
    record_event(s, actor=user, action="category.create", entity_type="Category", entity_id=str(cat.id), metadata={"name": name})
    return cat


def shop_products(s: "Session", *, category: str = "", q: str = "", sort: str = "featured") -> list[Product]:
    query = s.query(Product).filter(Product.is_active.is_(True))
    if category:
        query = query.join(Category, Product.category_id == Category.id).filter(Category.slug == category)
    if q:
        like = f"%{q}%"
        query = query.filter(or_(Product.name.ilike(like), Product.short_description.ilike(like), Product.description.ilike(like)))
    return query.order_by(*SORT_OPTIONS.get(sort, SORT_OPTIONS["featured"])).all()


# ---------- Reviews ----------
def submit_review(s: "Session", product: Product, user: "User", payload: dict) -> ProductReview:
    from app.enrollsage.modules.orders.models import Order, OrderItem

    try:
        rating = int(payload.get("rating") or 0)
    except (TypeError, ValueError):
        rating = 0
    if not 1 <= rating <= 5:
        raise ReviewError("Rating must be between 1 and 5.")
    existing = (
        s.query(ProductReview.id)
        .filter(ProductReview.product_id == product.id, ProductReview.user_id == user.id)
        .first()
    )
    if existing:
        raise ReviewError("You have already reviewed this product.")

    paid_order = (
        s.query(Order)
        .join(OrderItem, OrderItem.order_id == Order.id)
        .filter(
            Order.user_id == user.id,
            OrderItem.product_id == product.id,
            Order.status.in_(("paid", "processing", "shipped", "delivered")),
        )
        .order_by(Order.id.desc())
        .first()
    )
    review = ProductReview(
        product_id=product.id,
        user_id=user.id,
        order_id=paid_order.id if paid_order else None,
        rating=rating,
        title=(payload.get("title") or "").strip() or None,
        body=(payload.get("body") or "").strip() or None,
        author_name=(payload.get("author_name") or "").strip() or user.first_name or user.email.split("@")[0],
        is_verified_purchase=paid_order is not None,
        is_approved=False,
    )
    s.add(review)
    s.flush()
    record_event(
        s,
        actor=user,
        action="review.submit",
        entity_type="ProductReview",
        entity_id=str(review.id),
        metadata={"product_id": product.id, "rating": rating},
    )
    return review


def approve_review(s: "Session", review: ProductReview, user: "User") -> ProductReview:
    review.is_approved = True
    record_event(s, actor=user, action="review.approve", entity_type="ProductReview", entity_id=str(review.id))
    return review


def reject_review(s: "Session", review: ProductReview, user: "User") -> None:
    record_event(
        s,
        actor=user,
        action="review.reject",
        entity_type="ProductReview",
        entity_id=str(review.id),
        metadata={"product_id": review.product_id, "rating": review.rating},
    )
    s.delete(review)


def mark_helpful(s: "Session", review: ProductReview) -> ProductReview:
    review.helpful_count = (review.helpful_count or 0) + 1
    return review


def product_rating_summary(s: "Session", product: Product) -> dict:
    rows = (
        s.query(ProductReview.rating, func.count(ProductReview.id))
        .filter(ProductReview.product_id == product.id, ProductReview.is_approved.is_(True))
        .group_by(ProductReview.rating)
        .all()
    )
    counts = {r: 0 for r in range(1, 6)}
    for rating, n in rows:
        counts[rating] = n
    total = sum(counts.values())
    average = (Decimal(sum(r * n for r, n in counts.items())) / total).quantize(Decimal("0.1")) if total else None
    return {"count": total, "average": average, "distribution": counts}


def pending_reviews(s: "Session") -> list[ProductReview]:
    return s.query(ProductReview).filter(ProductReview.is_approved.is_(False)).order_by(ProductReview.created_at.asc()).all()
