from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN

from marketplace.config import PLATFORM_FEE_RATE
from marketplace.errors import ValidationError

CENT = Decimal("0.01")


@dataclass(frozen=True)
class Quote:
    charge_amount: Decimal
    platform_fee: Decimal
    instructor_amount: Decimal

    @property
    def is_free(self):
        return self.charge_amount == 0


def resolve_price(course, fee_rate=PLATFORM_FEE_RATE):
    """Work out what a course costs and how the sale is split.

    The discount price wins only when it is actually lower than the list
    price. The platform fee is rounded to the cent; the instructor gets the
    remainder so the two parts always add up to the charge.
    """
    price = Decimal(course.price)
    if price < 0:
        raise ValidationError("Course price cannot be negative")

    charge = price
    if course.discount_price is not None and Decimal(course.discount_price) < price:
        charge = Decimal(course.discount_price)
    charge = charge.quantize(CENT, rounding=ROUND_HALF_EVEN)

    fee = (charge * fee_rate).quantize(CENT, rounding=ROUND_HALF_EVEN)
    return Quote(charge_amount=charge, platform_fee=fee, instructor_amount=charge - fee)


def to_minor_units(amount):
    """Dollars to cents, banker's rounding."""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_EVEN))
