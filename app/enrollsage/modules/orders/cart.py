"""
Session cart: {product_id: quantity} stored in the Flask session, priced on every read.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from app.enrollsage.constants import FLAT_SHIPPING_RATE, FREE_SHIPPING_THRESHOLD
from app.enrollsage.modules.catalog.models import Product
from app.enrollsage.modules.promotions.discounts import DiscountError, calculate_discount, validate_discount
from app.enrollsage.modules.promotions.giftcards import GiftCardError, validate_gift_card
from app.enrollsage.utils import money

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.enrollsage.modules.promotions.models import DiscountCode, GiftCard

CART_KEY = "cart"
DISCOUNT_KEY = "cart_discount"
GIFT_CARD_KEY = "cart_gift_card"
MAX_LINE_QUANTITY = 99


@dataclass
class CartLine:
    product: Product
    quantity: int
    unit_price: Decimal
    line_total: Decimal
    clamped: bool = False


@dataclass
class CartSummary:
    lines: list[CartLine] = field(default_factory=list)
    subtotal: Decimal = Decimal("0.00")
    shipping: Decimal = Decimal("0.00")
    tax: Decimal = Decimal("0.00")
    discount: Decimal = Decimal("0.00")
    discount_code: "DiscountCode | None" = None
    discount_message: str | None = None
    discount_error: str | None = None
    gift_card: "GiftCard | None" = None
    gift_card_amount: Decimal = Decimal("0.00")
    gift_card_error: str | None = None
    total: Decimal = Decimal("0.00")

    @property
    def item_count(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines

    @property
    def amount_to_free_shipping(self) -> Decimal:
        return max(Decimal("0.00"), FREE_SHIPPING_THRESHOLD - self.subtotal)


def shipping_for(subtotal: Decimal) -> Decimal:
    return Decimal("0.00") if money(subtotal) >= FREE_SHIPPING_THRESHOLD else money(FLAT_SHIPPING_RATE)


# ---------- Session storage ----------
def get_cart(sess) -> dict[str, int]:
    raw = sess.get(CART_KEY) or {}
    return {str(k): int(v) for k, v in raw.items() if int(v) > 0}


def _save(sess, cart: dict[str, int]) -> None:
    sess[CART_KEY] = cart
    sess.modified = True


def add_to_cart(sess, product: Product, quantity: int = 1) -> dict[str, int]:
    if not product.is_active:
        raise ValueError("This product is not available.")
    if not product.in_stock or product.stock_quantity <= 0:
        raise ValueError(f"{product.name} is out of stock.")
    cart = get_cart(sess)
    key = str(product.id)
    new_qty = min(cart.get(key, 0) + max(1, quantity), product.stock_quantity, MAX_LINE_QUANTITY)
    cart[key] = new_qty
    _save(sess, cart)
    return cart


def update_cart(sess, product_id: int, quantity: int) -> dict[str, int]:
    cart = get_cart(sess)
    key = str(product_id)
    if quantity <= 0:
        cart.pop(key, None)
    else:
        cart[key] = min(quantity, MAX_LINE_QUANTITY)
    _save(sess, cart)
    return cart


def remove_from_cart(sess, product_id: int) -> dict[str, int]:
    return update_cart(sess, product_id, 0)


def clear_cart(sess) -> None:
    sess.pop(CART_KEY, None)
    sess.pop(DISCOUNT_KEY, None)
    sess.pop(GIFT_CARD_KEY, None)
    sess.modified = True


def cart_count(sess) -> int:
    return sum(get_cart(sess).values())


# ---------- Pricing ----------
def cart_summary(
    s: "Session",
    cart: dict[str, int],
    *,
    discount_code: str | None = None,
    gift_card_code: str | None = None,
    email: str | None = None,
    user_id: int | None = None,
) -> CartSummary:
    summary = CartSummary()
    ids = [int(k) for k in cart]
    products = {p.id: p for p in s.query(Product).filter(Product.id.in_(ids)).all()} if ids else {}
    for key, qty in cart.items():
        product = products.get(int(key))
        if product is None or not product.is_active:
            continue
        available = product.stock_quantity if product.in_stock else 0
        if available <= 0:
            continue
        quantity = min(qty, available)
        price = money(product.price)
        summary.lines.append(
            CartLine(product=product, quantity=quantity, unit_price=price, line_total=money(price * quantity), clamped=quantity < qty)
        )

    summary.subtotal = money(sum((line.line_total for line in summary.lines), Decimal("0.00")))
    summary.shipping = shipping_for(summary.subtotal) if summary.lines else Decimal("0.00")

    if discount_code and summary.lines:
        try:
            code = validate_discount(s, discount_code, summary.subtotal, email=email, user_id=user_id)
            result = calculate_discount(code, summary.subtotal, summary.shipping)
            summary.discount_code = code
            summary.discount = result.discount_amount
            summary.shipping = result.shipping
            summary.discount_message = result.message
        except DiscountError as e:
            summary.discount_error = str(e)

    after_discount = money(summary.subtotal - summary.discount + summary.shipping + summary.tax)

    if gift_card_code and summary.lines:
        try:
            card = validate_gift_card(s, gift_card_code)
            summary.gift_card = card
            summary.gift_card_amount = min(money(card.current_balance), after_discount)
        except GiftCardError as e:
            summary.gift_card_error = str(e)

    summary.total = money(max(Decimal("0.00"), after_discount - summary.gift_card_amount))
    return summary


def summary_for_session(s: "Session", sess, *, email: str | None = None, user_id: int | None = None) -> CartSummary:
    return cart_summary(
        s,
        get_cart(sess),
        discount_code=sess.get(DISCOUNT_KEY),
        gift_card_code=sess.get(GIFT_CARD_KEY),
        email=email,
        user_id=user_id,
    )
