"""Тести Statistics Engine."""

import math

import pytest

from digit_stats import (
    Trend,
    common_sequence,
    compute_snapshot,
    hot_cold,
    parity_split,
    rise_fall,
    signals,
    trend_of,
)
from tick_ohlcv import Candle, CandlePattern


def values_for_digits(digits):
    """Значення з двома знаками після коми, остання цифра яких дорівнює `digits[i]`."""

    return [float(f"{100 + i}.{i % 10}{d}") for i, d in enumerate(digits)]


class TestDigitHelpers:
    def test_hot_and_cold_digits_with_ties(self) -> None:
        hot, cold = hot_cold([2, 5, 5, 1, 1, 3, 3, 3, 3, 3])
        assert hot == [1, 2]
        assert cold == [3, 4]

    def test_no_cold_digits_when_all_counts_equal(self) -> None:
        hot, cold = hot_cold([2] * 10)
        assert hot == list(range(10))
        assert cold == []
        assert hot_cold([0] * 10) == ([], [])

    def test_rise_fall_ignores_ties(self) -> None:
        rises, falls, rise_pct, fall_pct = rise_fall([1, 2, 1, 1, 3])
        assert (rises, falls) == (2, 1)
        assert rise_pct == pytest.approx(66.67, abs=0.01)
        assert fall_pct == pytest.approx(33.33, abs=0.01)

    def test_rise_fall_without_moves(self) -> None:
        assert rise_fall([1.0, 1.0, 1.0]) == (0, 0, 0.0, 0.0)

    def test_parity_split(self) -> None:
        assert parity_split([0, 1, 2, 4]) == (75.0, 25.0)

    def test_trend_over_last_twenty_digits(self) -> None:
        assert trend_of([0] * 10 + [9] * 10) is Trend.UPWARD
        assert trend_of([9] * 10 + [0] * 10) is Trend.DOWNWARD
        assert trend_of([5] * 20) is Trend.NEUTRAL
        assert trend_of([1] * 19) is Trend.ANALYZING
        assert trend_of([9] * 30 + [5] * 20) is Trend.NEUTRAL

    def test_common_sequence_requires_hundred_digits(self) -> None:
        assert common_sequence([1, 2, 3] * 33) is None
        assert common_sequence([1, 2, 3] * 34) == "123"

    def test_common_sequence_prefers_first_seen_on_tie(self) -> None:
        assert common_sequence([i % 10 for i in range(100)]) == "012"

    def test_signals(self) -> None:
        pct = [20.0, 20.0, 20.0, 10.0, 10.0, 10.0, 5.0, 3.0, 1.0, 1.0]
        assert signals(pct, 60.0, 40.0) == ["rise", "over_2"]
        assert signals(list(reversed(pct)), 40.0, 58.0) == ["fall", "under_7"]
        assert signals([10.0] * 10, 50.0, 50.0) == []


class TestComputeSnapshot:
    def test_percentages_sum_to_hundred(self) -> None:
        digits = [(i * 7 + 3) % 10 for i in range(137)]
        snapshot = compute_snapshot("R_100", values_for_digits(digits), min_analysis_ticks=100)
        assert math.isclose(sum(snapshot.digit_percentages), 100.0)
        assert sum(snapshot.digit_counts) == 137

    def test_below_threshold_only_histogram_and_progress(self) -> None:
        digits = [i % 10 for i in range(50)]
        snapshot = compute_snapshot("R_100", values_for_digits(digits), min_analysis_ticks=100)

        assert snapshot.ready is False
        assert snapshot.progress_pct == 50.0
        assert sum(snapshot.digit_counts) == 50
        assert snapshot.hot_digits == ()
        assert snapshot.cold_digits == ()
        assert snapshot.trend is None
        assert snapshot.even_pct is None
        assert snapshot.rise_pct is None
        assert snapshot.common_sequence is None
        assert snapshot.pattern is None
        assert snapshot.signals == ()

    def test_ready_snapshot(self) -> None:
        digits = [i % 10 for i in range(120)]
        candle = Candle(bucket_start=0, timeframe_seconds=120, open=10.0, high=11.05, low=9.95, close=11.0)

        snapshot = compute_snapshot(
            "R_100",
            values_for_digits(digits),
            min_analysis_ticks=100,
            live_candle=candle,
        )

        assert snapshot.ready is True
        assert snapshot.progress_pct == 100.0
        assert snapshot.precision == 2
        assert snapshot.digit_counts == (12,) * 10
        assert snapshot.hot_digits == tuple(range(10))
        assert snapshot.cold_digits == ()
        assert snapshot.even_pct == 50.0
        assert snapshot.rise_pct == 100.0
        assert snapshot.trend is Trend.NEUTRAL
        assert snapshot.common_sequence == "012"
        assert snapshot.pattern == CandlePattern.BULLISH.value
        assert snapshot.current_digit == 9
        assert snapshot.last_digits == tuple(range(10))
        assert len(snapshot.parity_tail) == 50
        assert snapshot.parity_tail.startswith("EOEO")
        assert snapshot.signals == ("rise",)

    def test_fixed_digit_profile(self) -> None:
        values = [100.123] * 100
        last = compute_snapshot("R_100", values, min_analysis_ticks=10)
        fixed = compute_snapshot("R_100", values, min_analysis_ticks=10, digit_position=1)
        assert last.current_digit == 3
        assert fixed.current_digit == 1

    def test_payload_is_json_friendly(self) -> None:
        snapshot = compute_snapshot("R_100", values_for_digits([1, 2, 3]), min_analysis_ticks=100)
        payload = snapshot.to_payload()
        assert payload["instrument"] == "R_100"
        assert payload["digit_counts"][1] == 1
        assert payload["trend"] is None
        assert payload["last_digits"] == [1, 2, 3]

    def test_empty_window(self) -> None:
        snapshot = compute_snapshot("R_100", [], min_analysis_ticks=100)
        assert snapshot.window_length == 0
        assert snapshot.digit_percentages == (0.0,) * 10
        assert snapshot.current_digit is None
