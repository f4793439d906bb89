from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import UTC, datetime

DAY_SECONDS = 86_400

HOT = "HOT"
WARM = "WARM"
COLD = "COLD"

# (max elapsed days inclusive, multiplier, bucket)
DECAY_BUCKETS: tuple[tuple[int, float, str], ...] = (
    (3, 0.5, HOT),
    (10, 0.25, WARM),
)
COLD_MULTIPLIER = 0.1

# Share of the tenant default deal value per 0-5 lead score.
SCORE_VALUE_RATIOS: dict[int, float] = {0: 0.0, 1: 0.1, 2: 0.1, 3: 0.3, 4: 1.0, 5: 1.0}


@dataclass(frozen=True)
class ValuationResult:
    value: int
    multiplier: float
    elapsed_days: int
    bucket: str

    def as_dict(self) -> dict[str, object]:
        return {
            "value": self.value,
            "multiplier": self.multiplier,
            "elapsed_days": self.elapsed_days,
            "bucket": self.bucket,
        }


def _finite_non_negative(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    number = float(value)
    if not math.isfinite(number) or number < 0:
        return 0.0
    return number


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=UTC)


def elapsed_days(click_time: datetime, signal_time: datetime) -> int:
    seconds = (_aware(signal_time) - _aware(click_time)).total_seconds()
    if seconds <= 0:
        return 0
    return math.ceil(seconds / DAY_SECONDS)


def decay_multiplier(days: int) -> tuple[float, str]:
    days = max(0, int(days))
    for max_days, multiplier, bucket in DECAY_BUCKETS:
        if days <= max_days:
            return multiplier, bucket
    return COLD_MULTIPLIER, COLD


def value_signal(base_value: object, click_time: datetime, signal_time: datetime) -> ValuationResult:
    days = elapsed_days(click_time, signal_time)
    multiplier, bucket = decay_multiplier(days)
    value = _round_half_up(_finite_non_negative(base_value) * multiplier)
    return ValuationResult(value=value, multiplier=multiplier, elapsed_days=days, bucket=bucket)


def decayed_value(base_value: object, click_time: datetime, signal_time: datetime) -> int:
    return value_signal(base_value, click_time, signal_time).value


def lead_value(score: object, entered_price: object, site_default_value: object) -> float:
    """Monetary estimate for a lead.

    An entered, positive price wins outright. Otherwise a proxy is derived
    from the 0-5 lead score as a share of the tenant default deal value.
    """
    price = _finite_non_negative(entered_price)
    if price > 0:
        return price
    default_value = _finite_non_negative(site_default_value)
    raw_score = _finite_non_negative(score)
    bucket = min(5, int(raw_score))
    return default_value * SCORE_VALUE_RATIOS[bucket]
