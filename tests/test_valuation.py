from __future__ import annotations

import math
from datetime import UTC, datetime, timedelta

from app.valuation import COLD, HOT, WARM, decayed_value, elapsed_days, lead_value, value_signal

CLICK = datetime(2026, 1, 1, tzinfo=UTC)


def test_decay_buckets():
    assert decayed_value(100, CLICK, CLICK + timedelta(days=1)) == 50
    assert decayed_value(100, CLICK, CLICK + timedelta(days=5)) == 25
    assert decayed_value(100, CLICK, CLICK + timedelta(days=11)) == 10
    assert decayed_value(-100, CLICK, CLICK + timedelta(days=1)) == 0
    assert decayed_value(math.inf, CLICK, CLICK) == 0


def test_elapsed_days_rounds_up_and_clamps():
    assert elapsed_days(CLICK, CLICK + timedelta(hours=1)) == 1
    assert elapsed_days(CLICK, CLICK + timedelta(days=3)) == 3
    assert elapsed_days(CLICK, CLICK + timedelta(days=3, seconds=1)) == 4
    assert elapsed_days(CLICK, CLICK - timedelta(days=2)) == 0


def test_value_signal_reports_bucket_and_rounds_half_up():
    hot = value_signal(3, CLICK, CLICK + timedelta(days=2))
    assert (hot.value, hot.bucket, hot.multiplier) == (2, HOT, 0.5)
    assert value_signal(10, CLICK, CLICK + timedelta(days=10)).bucket == WARM
    assert value_signal(10, CLICK, CLICK + timedelta(days=10, hours=1)).bucket == COLD


def test_lead_value_proxy_from_score():
    assert lead_value(0, None, 1000) == 0
    assert lead_value(1, None, 1000) == 100
    assert lead_value(3, None, 1000) == 300
    assert lead_value(5, None, 1000) == 1000
    assert lead_value(9, None, 1000) == 1000


def test_lead_value_prefers_entered_price():
    assert lead_value(1, 250, 1000) == 250
    assert lead_value(4, 0, 1000) == 1000
    assert lead_value(2, -5, float("nan")) == 0
