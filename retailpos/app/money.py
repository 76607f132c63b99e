from decimal import Decimal, ROUND_HALF_UP

ZERO = Decimal("0")
CENT = Decimal("0.01")


def to_decimal(v) -> Decimal:
    if isinstance(v, Decimal):
        return v
    if v is None or v == "":
        return ZERO
    # str() first so floats like 0.1 keep their printed value.
    return Decimal(str(v))


def q_money(v: Decimal) -> Decimal:
    return to_decimal(v).quantize(CENT, rounding=ROUND_HALF_UP)
