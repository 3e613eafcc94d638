import logging
import warnings
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from ..conf import billing_setting
from ..exceptions import RateNotFound, StaleRateWarning
from ..models import ExchangeRate
from ..money import to_money

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateSnapshot:
    """Resolved rate, to be copied onto the record that used it."""
    base: str
    target: str
    rate: Decimal
    markup: Decimal
    effective_rate: Decimal
    effective_date: Optional[datetime]
    source_rate: Optional[ExchangeRate] = None
    is_stale: bool = False

    def convert(self, amount):
        return to_money(Decimal(amount) * self.effective_rate)


def identity_snapshot(currency, as_of):
    return RateSnapshot(
        base=currency, target=currency, rate=Decimal("1"), markup=Decimal("0"),
        effective_rate=Decimal("1"), effective_date=as_of,
    )


def resolve_rate(base, target, as_of):
    """
    Effective rate (markup included) for base -> target as of `as_of`.
    No ambient clock: callers always pass the instant they are billing at.
    Raises RateNotFound when no active row covers the instant.
    """
    base, target = base.upper(), target.upper()
    if base == target:
        return identity_snapshot(base, as_of)

    row = ExchangeRate.objects.effective(base, target, as_of).first()
    if row is None:
        logger.error("No exchange rate %s->%s for %s", base, target, as_of)
        raise RateNotFound(f"No active exchange rate {base}->{target} for {as_of:%Y-%m-%d %H:%M}")

    freshness = timedelta(hours=billing_setting("RATE_FRESHNESS_HOURS"))
    is_stale = as_of - row.effective_date > freshness
    if is_stale:
        logger.warning(
            "Stale exchange rate %s->%s: effective %s, billing at %s",
            base, target, row.effective_date, as_of,
        )
        warnings.warn(
            f"Exchange rate {base}->{target} is older than {freshness}",
            StaleRateWarning, stacklevel=2,
        )

    return RateSnapshot(
        base=base,
        target=target,
        rate=row.rate,
        markup=row.markup,
        effective_rate=row.effective_rate,
        effective_date=row.effective_date,
        source_rate=row,
        is_stale=is_stale,
    )


def convert_amount(amount, from_currency, to_currency, as_of):
    """Convert and return (converted_amount, snapshot)."""
    snapshot = resolve_rate(from_currency, to_currency, as_of)
    converted = snapshot.convert(amount)
    logger.debug("Converted %s %s to %s %s", amount, from_currency, converted, to_currency)
    return converted, snapshot
