from decimal import Decimal, ROUND_HALF_EVEN
from typing import List, Sequence

ZERO = Decimal("0.00")
CENT = Decimal("0.01")
RATE_PLACES = Decimal("0.00000001")


def to_money(value) -> Decimal:
    """Quantize to 2 places with banker's rounding (round-half-to-even)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_EVEN)


def to_rate(value) -> Decimal:
    return Decimal(value).quantize(RATE_PLACES, rounding=ROUND_HALF_EVEN)


def allocate_proportionally(total: Decimal, weights: Sequence[Decimal]) -> List[Decimal]:
    """
    Split `total` across `weights` proportionally.
    Each share is rounded; the rounding remainder goes to the last
    non-zero weight so the shares always sum to `total` exactly.
    """
    total = to_money(total)
    shares = [ZERO for _ in weights]
    base = sum(weights, Decimal("0"))
    if base == 0 or total == 0:
        return shares

    # last index that can absorb the remainder
    last = max(i for i, w in enumerate(weights) if w != 0)
    running = ZERO
    for i, weight in enumerate(weights):
        if weight == 0 or i == last:
            continue
        shares[i] = to_money(total * weight / base)
        running += shares[i]
    shares[last] = total - running
    return shares
