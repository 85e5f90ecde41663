"""Fixed-point money helpers.

Every amount handled by the reconciler is a ``Decimal`` with two places,
rounded half-up. Floats coming off the wire are converted through ``str`` so
that ``0.1 + 0.2`` style artefacts never reach a credit comparison.
"""

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value) -> Decimal:
    """Convert an int, float, str or Decimal into a quantised amount.

    Raises:
        ValueError: If the value is missing, boolean, or not a finite number.
    """
    if value is None or isinstance(value, bool):
        raise ValueError(f"Invalid amount: {value!r}")
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value).strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValueError(f"Invalid amount: {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def to_wire(amount: Decimal) -> float:
    """Render an amount the way the backend expects it in JSON bodies."""
    return float(to_money(amount))


def line_total(price, quantity: int) -> Decimal:
    return to_money(to_money(price) * quantity)
