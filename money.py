from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Union

from errors import ValidationError

CENT = Decimal("0.01")

MoneyLike = Union[Decimal, int, float, str]


def to_decimal(value: MoneyLike) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError("Invalid amount")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    return amount


def quantize_money(value: MoneyLike) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_cents(value: MoneyLike) -> int:
    return int(quantize_money(value) * 100)


def positive_cents(value: MoneyLike, label: str = "Amount") -> int:
    # Rounded first so 0.004 is rejected rather than stored as zero.
    cents = to_cents(value)
    if cents <= 0:
        raise ValidationError(f"{label} must be positive")
    return cents


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def split_proportionally(total_cents: int, weights: list[int]) -> list[int]:
    """Split ``total_cents`` across ``weights`` so the parts add up exactly.

    Each share is floored to whole cents first. The leftover cents then go one
    at a time to the largest fractional remainders, with the larger weight and
    then the earlier position winning ties.
    """
    weight_sum = sum(weights)
    if total_cents <= 0 or weight_sum <= 0:
        return [0 for _ in weights]

    exact = [Decimal(total_cents) * Decimal(w) / Decimal(weight_sum) for w in weights]
    shares = [int(x.to_integral_value(rounding=ROUND_FLOOR)) for x in exact]
    leftover = total_cents - sum(shares)

    order = sorted(
        range(len(weights)),
        key=lambda i: (exact[i] - shares[i], weights[i], -i),
        reverse=True,
    )
    for i in order[:leftover]:
        shares[i] += 1
    return shares
