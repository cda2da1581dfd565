from dataclasses import dataclass
from enum import Enum


class BalanceSource(str, Enum):
    cache = "cache"
    computed = "computed"


@dataclass(frozen=True)
class BalanceDecision:
    balance_cents: int
    source: BalanceSource
    cached_cents: int
    computed_cents: int

    @property
    def drift_cents(self) -> int:
        return abs(self.cached_cents - self.computed_cents)

    @property
    def diverged(self) -> bool:
        return self.source == BalanceSource.computed


def compute_balance(
    deposits_cents: int, expenses_cents: int, opening_cents: int = 0
) -> int:
    return max(0, opening_cents + deposits_cents - expenses_cents)


def reconcile_balance(
    cached_cents: int, computed_cents: int, tolerance_cents: int
) -> BalanceDecision:
    """Pick the balance to report.

    The cache is trusted while it is non-negative and within ``tolerance_cents``
    of the recomputed value; small rounding drift is not worth a resync on
    every read. Anything else reports the recomputed value.
    """
    drift = abs(cached_cents - computed_cents)
    if drift <= tolerance_cents and cached_cents >= 0:
        return BalanceDecision(
            balance_cents=cached_cents,
            source=BalanceSource.cache,
            cached_cents=cached_cents,
            computed_cents=computed_cents,
        )
    return BalanceDecision(
        balance_cents=computed_cents,
        source=BalanceSource.computed,
        cached_cents=cached_cents,
        computed_cents=computed_cents,
    )
