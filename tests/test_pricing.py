from decimal import Decimal
from types import SimpleNamespace

import pytest

from marketplace.errors import ValidationError
from marketplace.pricing import resolve_price, to_minor_units


def course(price, discount_price=None):
    return SimpleNamespace(
        price=Decimal(price),
        discount_price=Decimal(discount_price) if discount_price is not None else None,
    )


def test_discount_price_is_charged_and_split():
    quote = resolve_price(course("100.00", "80.00"))

    assert quote.charge_amount == Decimal("80.00")
    assert quote.platform_fee == Decimal("4.00")
    assert quote.instructor_amount == Decimal("76.00")


def test_list_price_without_discount():
    quote = resolve_price(course("49.99"))

    assert quote.charge_amount == Decimal("49.99")
    assert quote.platform_fee + quote.instructor_amount == quote.charge_amount


def test_discount_not_below_price_is_ignored():
    assert resolve_price(course("50.00", "50.00")).charge_amount == Decimal("50.00")


def test_fee_rounds_to_the_cent():
    quote = resolve_price(course("9.99"))

    # 9.99 * 0.05 = 0.4995
    assert quote.platform_fee == Decimal("0.50")
    assert quote.instructor_amount == Decimal("9.49")


def test_free_course():
    quote = resolve_price(course("0"))

    assert quote.is_free
    assert quote.platform_fee == Decimal("0.00")


def test_negative_price_rejected():
    with pytest.raises(ValidationError):
        resolve_price(course("-1.00"))


def test_minor_units_use_bankers_rounding():
    assert to_minor_units(Decimal("80.00")) == 8000
    assert to_minor_units(Decimal("0.125")) == 12
    assert to_minor_units(Decimal("0.135")) == 14
