"""Statistics Engine: похідні метрики вікна тиків.

`compute_snapshot` чиста: не має побічних ефектів і не зберігає стану, тому
повторний виклик на тому самому вікні дає той самий знімок.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple

from tick_ohlcv import Candle, classify_pattern
from tick_window import detect_precision, digits_of

TREND_WINDOW = 20
TREND_THRESHOLD = 0.5
SEQUENCE_MIN_DIGITS = 100
SEQUENCE_LENGTH = 3
LAST_DIGITS_COUNT = 10
PARITY_TAIL_COUNT = 50
RISE_FALL_SIGNAL_PCT = 57.0
RARE_DIGIT_PCT = 10.0
OVER_2_DIGITS = (7, 8, 9)
UNDER_7_DIGITS = (0, 1, 2)


class Trend(str, Enum):
    ANALYZING = "analyzing"
    UPWARD = "upward"
    DOWNWARD = "downward"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class StatisticsSnapshot:
    instrument: str
    window_length: int
    precision: int
    digit_counts: Tuple[int, ...]
    digit_percentages: Tuple[float, ...]
    ready: bool
    progress_pct: float
    current_digit: Optional[int] = None
    hot_digits: Tuple[int, ...] = ()
    cold_digits: Tuple[int, ...] = ()
    even_pct: Optional[float] = None
    odd_pct: Optional[float] = None
    rise_count: Optional[int] = None
    fall_count: Optional[int] = None
    rise_pct: Optional[float] = None
    fall_pct: Optional[float] = None
    trend: Optional[Trend] = None
    common_sequence: Optional[str] = None
    pattern: Optional[str] = None
    last_digits: Tuple[int, ...] = ()
    parity_tail: str = ""
    signals: Tuple[str, ...] = field(default_factory=tuple)

    def to_payload(self) -> Dict[str, object]:
        return {
            "instrument": self.instrument,
            "window_length": self.window_length,
            "precision": self.precision,
            "ready": self.ready,
            "progress_pct": round(self.progress_pct, 2),
            "current_digit": self.current_digit,
            "digit_counts": list(self.digit_counts),
            "digit_percentages": [round(pct, 2) for pct in self.digit_percentages],
            "hot_digits": list(self.hot_digits),
            "cold_digits": list(self.cold_digits),
            "even_pct": self.even_pct,
            "odd_pct": self.odd_pct,
            "rise_count": self.rise_count,
            "fall_count": self.fall_count,
            "rise_pct": self.rise_pct,
            "fall_pct": self.fall_pct,
            "trend": self.trend.value if self.trend is not None else None,
            "common_sequence": self.common_sequence,
            "pattern": self.pattern,
            "last_digits": list(self.last_digits),
            "parity_tail": self.parity_tail,
            "signals": list(self.signals),
        }


def digit_counts(digits: Sequence[int]) -> List[int]:
    counts = [0] * 10
    for digit in digits:
        counts[digit] += 1
    return counts


def digit_percentages(counts: Sequence[int], total: int) -> List[float]:
    if total <= 0:
        return [0.0] * 10
    return [count / total * 100.0 for count in counts]


def hot_cold(counts: Sequence[int]) -> Tuple[List[int], List[int]]:
    """Hot = усі цифри з максимумом (якщо max > 0); cold лише коли min < max."""

    top = max(counts)
    bottom = min(counts)
    if top <= 0:
        return [], []
    hot = [digit for digit, count in enumerate(counts) if count == top]
    cold = [digit for digit, count in enumerate(counts) if count == bottom] if bottom < top else []
    return hot, cold


def parity_split(digits: Sequence[int]) -> Tuple[float, float]:
    if not digits:
        return 0.0, 0.0
    even = sum(1 for digit in digits if digit % 2 == 0)
    total = len(digits)
    return even / total * 100.0, (total - even) / total * 100.0


def rise_fall(values: Sequence[float]) -> Tuple[int, int, float, float]:
    """Зростання/падіння між сусідніми значеннями; рівні пари ігноруються.

    >>> rise_fall([1, 2, 1, 1, 3])[:2]
    (2, 1)
    """

    rises = 0
    falls = 0
    for prev, cur in zip(values, values[1:]):
        if cur > prev:
            rises += 1
        elif cur < prev:
            falls += 1
    moves = rises + falls
    if moves == 0:
        return rises, falls, 0.0, 0.0
    return rises, falls, rises / moves * 100.0, falls / moves * 100.0


def trend_of(digits: Sequence[int]) -> Trend:
    if len(digits) < TREND_WINDOW:
        return Trend.ANALYZING
    recent = list(digits)[-TREND_WINDOW:]
    half = TREND_WINDOW // 2
    first = sum(recent[:half]) / half
    second = sum(recent[half:]) / (TREND_WINDOW - half)
    delta = second - first
    if delta > TREND_THRESHOLD:
        return Trend.UPWARD
    if delta < -TREND_THRESHOLD:
        return Trend.DOWNWARD
    return Trend.NEUTRAL


def common_sequence(digits: Sequence[int]) -> Optional[str]:
    """Найчастіша суцільна трійка цифр; при рівності перемагає перша побачена."""

    if len(digits) < SEQUENCE_MIN_DIGITS:
        return None
    counter: Counter = Counter()
    for idx in range(len(digits) - SEQUENCE_LENGTH + 1):
        counter["".join(str(d) for d in digits[idx : idx + SEQUENCE_LENGTH])] += 1
    # Counter зберігає порядок вставки, max() повертає перший із максимумом.
    return max(counter, key=counter.__getitem__)


def signals(percentages: Sequence[float], rise_pct: float, fall_pct: float) -> List[str]:
    fired: List[str] = []
    if rise_pct > RISE_FALL_SIGNAL_PCT:
        fired.append("rise")
    if fall_pct > RISE_FALL_SIGNAL_PCT:
        fired.append("fall")
    if all(percentages[d] < RARE_DIGIT_PCT for d in OVER_2_DIGITS):
        fired.append("over_2")
    if all(percentages[d] < RARE_DIGIT_PCT for d in UNDER_7_DIGITS):
        fired.append("under_7")
    return fired


def compute_snapshot(
    instrument: str,
    values: Sequence[float],
    *,
    min_analysis_ticks: int,
    digit_position: Optional[int] = None,
    live_candle: Optional[Candle] = None,
) -> StatisticsSnapshot:
    """Будує знімок статистики для значень вікна (від найстарішого до найновішого).

    Нижче порогу `min_analysis_ticks` публікуються лише гістограма та прогрес
    накопичення; решта метрик лишається порожньою.
    """

    length = len(values)
    precision = detect_precision(values)
    digits = digits_of(values, precision, digit_position)
    counts = digit_counts(digits)
    percentages = digit_percentages(counts, length)
    threshold = max(1, int(min_analysis_ticks))
    ready = length >= threshold
    progress = min(100.0, length / threshold * 100.0)

    base = dict(
        instrument=instrument,
        window_length=length,
        precision=precision,
        digit_counts=tuple(counts),
        digit_percentages=tuple(percentages),
        ready=ready,
        progress_pct=progress,
        current_digit=digits[-1] if digits else None,
        last_digits=tuple(digits[-LAST_DIGITS_COUNT:]),
    )
    if not ready:
        return StatisticsSnapshot(**base)

    hot, cold = hot_cold(counts)
    even_pct, odd_pct = parity_split(digits)
    rises, falls, rise_pct, fall_pct = rise_fall(values)
    pattern = classify_pattern(live_candle).value if live_candle is not None else None
    return StatisticsSnapshot(
        **base,
        hot_digits=tuple(hot),
        cold_digits=tuple(cold),
        even_pct=even_pct,
        odd_pct=odd_pct,
        rise_count=rises,
        fall_count=falls,
        rise_pct=rise_pct,
        fall_pct=fall_pct,
        trend=trend_of(digits),
        common_sequence=common_sequence(digits),
        pattern=pattern,
        parity_tail="".join("E" if d % 2 == 0 else "O" for d in digits[-PARITY_TAIL_COUNT:]),
        signals=tuple(signals(percentages, rise_pct, fall_pct)),
    )
