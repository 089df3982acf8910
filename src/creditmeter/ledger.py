import math
from decimal import ROUND_CEILING, Decimal

NANO_PER_UNIT = 1_000_000_000

_NANO_DIGITS = 9

CURRENCY_SYMBOLS: "dict[str, str]" = {
    "usd": "$",
    "eur": "€",
    "gbp": "£",
}


def to_nano_dollars(amount: "float | int | Decimal") -> "int":
    """
    converts a currency amount to integer nano-dollars, rounding up.

    Floats go through their shortest repr (str) so that binary noise such as
    1.1 == 1.100000000000000088 does not add a nano-dollar. Any remainder
    below one nano-dollar is charged in full.
    """
    if isinstance(amount, float):
        if not math.isfinite(amount):
            raise ValueError(f"cannot convert non-finite amount {amount!r}")
        value = Decimal(repr(amount))
    else:
        value = Decimal(amount)
        if not value.is_finite():
            raise ValueError(f"cannot convert non-finite amount {amount!r}")

    scaled = value * NANO_PER_UNIT
    return int(scaled.to_integral_value(rounding=ROUND_CEILING))


def from_nano_dollars(amount: "int") -> "float":
    """
    converts nano-dollars to a float for display. Never store or compare
    the result.
    """
    return amount / NANO_PER_UNIT


def format_currency(
    amount: "int",
    currency: "str" = "usd",
    max_decimals: "int" = 12,
) -> "str":
    """
    renders nano-dollars exactly, e.g. 1_500_000_000 -> "$1.50".

    Integer and fractional parts are split with divmod so no float
    formatting is involved. Trailing zeros are trimmed, but at least
    two decimals are always shown ("$1.50", "$2.00", never "$1.5")
    unless max_decimals is below two. Digits beyond max_decimals are
    cut, not rounded.
    """
    symbol = CURRENCY_SYMBOLS.get(currency.lower(), "$")
    sign = "-" if amount < 0 else ""
    whole, fraction = divmod(abs(amount), NANO_PER_UNIT)

    digits = str(fraction).zfill(_NANO_DIGITS)
    # nano-dollars carry 9 digits, pad if more were asked for
    if max_decimals > _NANO_DIGITS:
        digits = digits.ljust(max_decimals, "0")
    digits = digits[:max_decimals].rstrip("0")

    if len(digits) < 2:
        digits = digits.ljust(2, "0")
    if max_decimals < 2:
        digits = digits[:max_decimals]

    if not digits:
        return f"{sign}{symbol}{whole}"
    return f"{sign}{symbol}{whole}.{digits}"
