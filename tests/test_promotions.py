from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from app.enrollsage.db import session_scope
from app.enrollsage.models import User
from app.enrollsage.modules.promotions.discounts import (
    DiscountError,
    calculate_discount,
    create_discount_code,
    record_discount_usage,
    validate_discount,
    validate_discount_payload,
)
from app.enrollsage.modules.promotions.giftcards import (
    GiftCardError,
    adjust_gift_card_balance,
    create_gift_card,
    disable_gift_card,
    generate_gift_card_code,
    normalize_gift_card_code,
    redeem_gift_card,
    refund_to_gift_card,
    validate_gift_card,
)
from app.enrollsage.modules.promotions.models import DiscountCode


def _owner(s):
    return s.query(User).filter(User.email == "admin@example.com").one()


def test_percentage_discount_respects_cap():
    code = DiscountCode(code="HALF", type="percentage", value=Decimal("50"), max_discount_amount=Decimal("10.00"))
    result = calculate_discount(code, Decimal("40.00"), Decimal("7.00"))
    assert result.discount_amount == Decimal("10.00")
    assert result.shipping == Decimal("7.00")
    assert result.message == "50% off applied"


def test_fixed_discount_never_exceeds_subtotal():
    code = DiscountCode(code="TENOFF", type="fixed", value=Decimal("10"))
    assert calculate_discount(code, Decimal("6.50"), Decimal("7.00")).discount_amount == Decimal("6.50")


def test_free_shipping_discount():
    code = DiscountCode(code="SHIP", type="free_shipping", value=Decimal("0"))
    result = calculate_discount(code, Decimal("20.00"), Decimal("7.00"))
    assert result.discount_amount == Decimal("0.00")
    assert result.shipping == Decimal("0.00")


def test_discount_payload_rules():
    assert validate_discount_payload({"code": "OK1", "type": "percentage", "value": Decimal("101")}) == [
        "Percentage cannot exceed 100."
    ]
    errors = validate_discount_payload({"code": "bad code!", "type": "bogus"})
    assert len(errors) == 2
    start = datetime(2025, 1, 2)
    assert validate_discount_payload(
        {"code": "X", "type": "free_shipping", "starts_at": start, "expires_at": start - timedelta(days=1)}
    ) == ["Expiry must be after the start date."]


def test_discount_validation_order(app):
    now = datetime(2025, 6, 1)
    with session_scope(app) as s:
        owner = _owner(s)
        base = {"type": "fixed", "value": Decimal("5")}
        create_discount_code(s, {**base, "code": "OFF", "is_active": False}, owner)
        create_discount_code(s, {**base, "code": "SOON", "starts_at": now + timedelta(days=1)}, owner)
        create_discount_code(s, {**base, "code": "OLD", "expires_at": now - timedelta(days=1)}, owner)
        used_up = create_discount_code(s, {**base, "code": "GONE", "max_uses": 1}, owner)
        once = create_discount_code(s, {**base, "code": "ONCE"}, owner)
        create_discount_code(s, {**base, "code": "BIG", "min_order_amount": Decimal("25.00")}, owner)

        def check(code, **kw):
            return validate_discount(s, code, Decimal("20.00"), now=now, **kw)

        with pytest.raises(DiscountError, match="Invalid discount code"):
            check("NOPE")
        with pytest.raises(DiscountError, match="no longer active"):
            check("off")
        with pytest.raises(DiscountError, match="not yet active"):
            check("SOON")
        with pytest.raises(DiscountError, match="has expired"):
            check("OLD")

        record_discount_usage(s, used_up, order_id=None, email="a@example.com", user_id=None, amount=Decimal("5"))
        with pytest.raises(DiscountError, match="usage limit"):
            check("GONE")

        record_discount_usage(s, once, order_id=None, email="Repeat@Example.com", user_id=None, amount=Decimal("5"))
        with pytest.raises(DiscountError, match="already used"):
            check("ONCE", email="repeat@example.com")
        assert check("ONCE", email="new@example.com").code == "ONCE"

        with pytest.raises(DiscountError, match=r"Minimum order of \$25.00"):
            check("BIG")

        with pytest.raises(DiscountError, match="already exists"):
            create_discount_code(s, {**base, "code": "once"}, owner)


def test_gift_card_codes():
    code = generate_gift_card_code()
    assert code.startswith("SOAP-")
    assert [len(part) for part in code.split("-")] == [4, 4, 4, 4]
    assert normalize_gift_card_code("soap abcd efgh jkmn") == "SOAP-ABCD-EFGH-JKMN"
    assert normalize_gift_card_code("ABCDEFGHJKMN") == "SOAP-ABCD-EFGH-JKMN"
    assert normalize_gift_card_code(" short ") == "SHORT"


def test_gift_card_lifecycle(app):
    with session_scope(app) as s:
        owner = _owner(s)
        with pytest.raises(GiftCardError, match="limited to"):
            create_gift_card(s, Decimal("500.01"), owner)
        with pytest.raises(GiftCardError, match="greater than zero"):
            create_gift_card(s, Decimal("0"), owner)

        card = create_gift_card(s, Decimal("30.00"), owner, recipient_email="Friend@Example.com")
        assert card.status == "active"
        assert card.recipient_email == "friend@example.com"
        assert validate_gift_card(s, card.code) is card

        assert redeem_gift_card(s, card, Decimal("45.00"), order_id=None) == Decimal("30.00")
        assert card.status == "depleted"
        with pytest.raises(GiftCardError, match="no remaining balance"):
            validate_gift_card(s, card.code)

        refund_to_gift_card(s, card, Decimal("12.50"), order_id=None)
        assert card.status == "active"
        assert card.current_balance == Decimal("12.50")

        with pytest.raises(GiftCardError, match="note is required"):
            adjust_gift_card_balance(s, card, Decimal("-2.50"), " ", owner)
        adjust_gift_card_balance(s, card, Decimal("-2.50"), "Goodwill correction", owner)
        assert card.current_balance == Decimal("10.00")
        assert [t.type for t in card.transactions] == ["adjustment", "redemption", "refund", "adjustment"]

        disable_gift_card(s, card, owner)
        with pytest.raises(GiftCardError, match="disabled"):
            validate_gift_card(s, card.code)


def test_purchased_and_expired_cards(app):
    with session_scope(app) as s:
        pending = create_gift_card(s, Decimal("20.00"), None, purchased=True)
        assert pending.status == "pending"
        assert pending.transactions == []
        with pytest.raises(GiftCardError, match="not been activated"):
            validate_gift_card(s, pending.code)

        short = create_gift_card(s, Decimal("20.00"), _owner(s), expires_in_days=1)
        with pytest.raises(GiftCardError, match="expired"):
            validate_gift_card(s, short.code, now=datetime.utcnow() + timedelta(days=2))
        assert short.status == "expired"
        with pytest.raises(GiftCardError, match="not found"):
            validate_gift_card(s, "SOAP-0000-0000-0000")
