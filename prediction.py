"""Forecast how many days the active allowance will last.

Four independent estimators each turn a daily spending rate into a number of
days. A rate of zero carries no signal and is reported as ``None``; the
surviving estimates are combined with fixed weights renormalised over the
ones present.
"""

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from models import AllowanceTopup, Expense

NO_SIGNAL = 999
RECENT_WINDOW_DAYS = 3
PATTERN_HORIZON_DAYS = 14
HISTORY_LIMIT = 10
FALLBACK_MIN_RATE_CENTS = 1000
FALLBACK_RATE_SHARE = 0.1

WEIGHTS: dict[str, float] = {
    "current": 0.4,
    "recent3day": 0.3,
    "historical": 0.2,
    "pattern": 0.1,
}


@dataclass
class Recommendation:
    type: str
    message: str
    action: str


@dataclass
class Prediction:
    predictions: dict[str, Optional[int]]
    confidence: int
    daily_rates: dict[str, int]
    historical_data: dict[str, float]
    recommendations: list[Recommendation] = field(default_factory=list)

    @property
    def days_left(self) -> int:
        return int(self.predictions["weighted"] or 0)

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def format_amount(cents: int) -> str:
    return f"{cents / 100:,.2f}"


def _estimate(remaining_cents: int, rate_cents: float) -> int:
    if rate_cents <= 0:
        return NO_SIGNAL
    return math.floor(remaining_cents / rate_cents)


def _days_active(topup: AllowanceTopup, now: datetime) -> int:
    elapsed = (now - topup.received_at).total_seconds() / 86400
    return max(1, math.ceil(elapsed))


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def weighted_forecast(estimates: dict[str, int]) -> Optional[tuple[float, int]]:
    """Weighted mean and confidence of the estimates below ``NO_SIGNAL``."""
    valid = {name: value for name, value in estimates.items() if value < NO_SIGNAL}
    if not valid:
        return None

    total_weight = sum(WEIGHTS[name] for name in valid)
    mean = sum(value * WEIGHTS[name] for name, value in valid.items()) / total_weight

    variance = sum((value - mean) ** 2 for value in valid.values()) / len(valid)
    stddev = math.sqrt(variance)
    if mean > 0:
        confidence = 100 - (stddev / mean * 100)
    else:
        confidence = 100.0 if stddev == 0 else 0.0
    confidence = max(0.0, min(100.0, confidence))
    return mean, round_half_up(confidence)


def predict(
    topup: AllowanceTopup,
    expenses: Iterable[Expense],
    historical_topups: Iterable[AllowanceTopup],
    now: datetime,
) -> Prediction:
    expenses = list(expenses)
    history = [t for t in historical_topups if (t.days_lasted or 0) > 0][:HISTORY_LIMIT]
    remaining = topup.remaining_cents
    days_active = _days_active(topup, now)

    current_rate = topup.spent_cents / days_active
    current = _estimate(remaining, current_rate)

    window = timedelta(days=RECENT_WINDOW_DAYS)
    recent_spent = sum(e.amount_cents for e in expenses if now - e.occurred_at <= window)
    recent_rate = recent_spent / min(RECENT_WINDOW_DAYS, days_active)
    recent = _estimate(remaining, recent_rate)

    historical_rate = _mean([t.amount_cents / t.days_lasted for t in history])
    historical_duration = _mean([float(t.days_lasted) for t in history])
    historical = _estimate(remaining, historical_rate)

    weekday_amounts = [e.amount_cents for e in expenses if e.date.weekday() < 5]
    weekend_amounts = [e.amount_cents for e in expenses if e.date.weekday() >= 5]
    weekday_avg = _mean(weekday_amounts) if weekday_amounts else current_rate
    weekend_avg = _mean(weekend_amounts) if weekend_amounts else current_rate

    today = now.date()
    horizon = [today + timedelta(days=i) for i in range(PATTERN_HORIZON_DAYS)]
    weekdays = sum(1 for day in horizon if day.weekday() < 5)
    weekends = len(horizon) - weekdays
    projected = weekdays * weekday_avg + weekends * weekend_avg
    pattern = _estimate(remaining, projected / PATTERN_HORIZON_DAYS)

    estimates = {
        "current": current,
        "recent3day": recent,
        "historical": historical,
        "pattern": pattern,
    }
    forecast = weighted_forecast(estimates)
    if forecast is None:
        # no spending history to agree with, so no confidence either
        floor_rate = max(FALLBACK_MIN_RATE_CENTS, topup.amount_cents * FALLBACK_RATE_SHARE)
        weighted = float(math.floor(remaining / floor_rate))
        confidence = 0
    else:
        weighted, confidence = forecast

    reported: dict[str, Optional[int]] = {
        name: (None if value >= NO_SIGNAL else max(0, math.floor(value)))
        for name, value in estimates.items()
    }
    reported["weighted"] = max(0, math.floor(weighted))

    return Prediction(
        predictions=reported,
        confidence=confidence,
        daily_rates={
            "current": round_half_up(current_rate),
            "recent3day": round_half_up(recent_rate),
            "historical": round_half_up(historical_rate),
            "weekday": round_half_up(weekday_avg),
            "weekend": round_half_up(weekend_avg),
        },
        historical_data={
            "avg_duration": round_half_up(historical_duration * 10) / 10,
            "total_topups": len(history),
        },
    )


def recommendations(prediction: Prediction, remaining_cents: int) -> list[Recommendation]:
    recs: list[Recommendation] = []
    days_left = prediction.days_left
    rates = prediction.daily_rates

    if days_left <= 1:
        recs.append(
            Recommendation(
                type="urgent",
                message="Your allowance will likely be depleted today.",
                action="Limit spending to emergency items only",
            )
        )
    elif days_left <= 2:
        recs.append(
            Recommendation(
                type="warning",
                message=f"Your allowance will last approximately {days_left} more days.",
                action=(
                    f"Reduce daily spending to {format_amount(round_half_up(remaining_cents / 3))}"
                    " to extend to 3 days"
                ),
            )
        )
    elif days_left <= 3:
        recs.append(
            Recommendation(
                type="caution",
                message=f"Your allowance will last about {days_left} days.",
                action=(
                    f"Target daily spending of {format_amount(round_half_up(remaining_cents / 5))}"
                    " to extend to 5 days"
                ),
            )
        )
    elif days_left >= 7:
        recs.append(
            Recommendation(
                type="good",
                message=f"Your allowance should last {days_left}+ days at the current rate.",
                action=(
                    f"Consider saving {format_amount(round_half_up(rates['current'] * 0.2))}"
                    " per day for emergencies"
                ),
            )
        )

    if rates["weekend"] > rates["weekday"] * 1.5:
        recs.append(
            Recommendation(
                type="insight",
                message="You spend significantly more on weekends.",
                action=(
                    "Try limiting weekend spending to "
                    f"{format_amount(round_half_up(rates['weekday'] * 1.2))}"
                ),
            )
        )

    if prediction.confidence < 50:
        recs.append(
            Recommendation(
                type="info",
                message="Spending patterns are irregular.",
                action="Add expenses daily to improve prediction accuracy",
            )
        )

    return recs
