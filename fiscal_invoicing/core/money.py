"""Monetary rounding and proportional allocation helpers."""

from decimal import Decimal, ROUND_HALF_UP
from typing import List, Sequence


CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def round_money(value) -> Decimal:
    """Round to the cent, half-up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def apportion(total, weights: Sequence[Decimal]) -> List[Decimal]:
    """
    Split `total` across `weights` proportionally, in whole cents.

    Uses the largest-remainder method, so the parts always add up to the
    rounded total exactly. With all-zero weights the whole amount goes to
    the first part.
    """
    if not weights:
        return []

    total_cents = int((round_money(total) / CENT).to_integral_value())
    weight_sum = sum((Decimal(str(w)) for w in weights), Decimal("0"))

    if weight_sum == 0:
        parts = [0] * len(weights)
        parts[0] = total_cents
        return [Decimal(p) * CENT for p in parts]

    raw = [total_cents * Decimal(str(w)) / weight_sum for w in weights]
    parts = [int(r) for r in raw]
    remainder = total_cents - sum(parts)

    # Hand out leftover cents to the largest fractional parts first
    order = sorted(range(len(raw)), key=lambda i: raw[i] - parts[i], reverse=True)
    for i in order[:remainder]:
        parts[i] += 1

    return [Decimal(p) * CENT for p in parts]


def format_document_number(point_of_sale: int, sequence_number: int) -> str:
    """Human document number: PPPPP-NNNNNNNN."""
    return f"{int(point_of_sale):05d}-{int(sequence_number):08d}"
