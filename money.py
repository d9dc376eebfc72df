from decimal import ROUND_HALF_UP, Decimal

CENT = Decimal("0.01")


def to_cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_cents(cents: int) -> Decimal:
    return (Decimal(int(cents)) / 100).quantize(CENT)


def percent_of(part_cents: int, whole_cents: int) -> Decimal:
    # 0 for an empty whole instead of a division error
    if whole_cents == 0:
        return Decimal("0.00")
    ratio = Decimal(part_cents) * 100 / Decimal(whole_cents)
    return ratio.quantize(CENT, rounding=ROUND_HALF_UP)
