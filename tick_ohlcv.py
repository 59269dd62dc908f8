"""Агрегація тиків у OHLC-свічки та класифікація патерну активної свічки.

Bucket свічки: `tick_time - (tick_time mod timeframe)`. Інтервали трактуються
як `[bucket_start, bucket_start + timeframe)`: тик рівно на межі відкриває
наступний bucket і фіналізує попередню свічку.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping

SECONDS_IN_MINUTE = 60
DOJI_BODY_RATIO = 0.3
SHADOW_DOMINANCE_RATIO = 2.0


def _format_tf_label(tf_seconds: int) -> str:
    """Перетворює тривалість у секундах на текстовий таймфрейм."""
    if tf_seconds % (SECONDS_IN_MINUTE * 60) == 0:
        hours = tf_seconds // (SECONDS_IN_MINUTE * 60)
        return f"{hours}h"
    if tf_seconds % SECONDS_IN_MINUTE == 0:
        minutes = tf_seconds // SECONDS_IN_MINUTE
        return f"{minutes}m"
    return f"{tf_seconds}s"


def bucket_start(tick_time: int, timeframe_seconds: int) -> int:
    return tick_time - (tick_time % timeframe_seconds)


class CandlePattern(str, Enum):
    DOJI = "doji"
    SHOOTING_STAR_BULL = "shooting_star_bull"
    HAMMER_BULL = "hammer_bull"
    BULLISH = "bullish"
    HANGING_MAN_BEAR = "hanging_man_bear"
    INVERTED_HAMMER_BEAR = "inverted_hammer_bear"
    BEARISH = "bearish"


@dataclass
class Candle:
    """OHLC-свічка; жива свічка мутує на місці до переходу межі bucket."""

    bucket_start: int
    timeframe_seconds: int
    open: float
    high: float
    low: float
    close: float
    tick_count: int = 1
    complete: bool = False

    @property
    def bucket_end(self) -> int:
        return self.bucket_start + self.timeframe_seconds

    @property
    def body(self) -> float:
        return abs(self.close - self.open)

    @property
    def upper_shadow(self) -> float:
        return self.high - max(self.open, self.close)

    @property
    def lower_shadow(self) -> float:
        return min(self.open, self.close) - self.low

    def update(self, value: float) -> None:
        self.high = max(self.high, value)
        self.low = min(self.low, value)
        self.close = value
        self.tick_count += 1

    def to_dict(self) -> dict:
        return {
            "bucket_start": self.bucket_start,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "tick_count": self.tick_count,
            "complete": self.complete,
        }

    @classmethod
    def opened_at(cls, start: int, timeframe_seconds: int, value: float) -> Candle:
        return cls(
            bucket_start=start,
            timeframe_seconds=timeframe_seconds,
            open=value,
            high=value,
            low=value,
            close=value,
        )


def classify_pattern(candle: Candle) -> CandlePattern:
    """Класифікує патерн свічки за співвідношенням тіла та тіней."""

    body = candle.body
    upper = candle.upper_shadow
    lower = candle.lower_shadow
    if body < DOJI_BODY_RATIO * (upper + lower):
        return CandlePattern.DOJI
    if candle.close > candle.open:
        if upper > SHADOW_DOMINANCE_RATIO * body:
            return CandlePattern.SHOOTING_STAR_BULL
        if lower > SHADOW_DOMINANCE_RATIO * body:
            return CandlePattern.HAMMER_BULL
        return CandlePattern.BULLISH
    if upper > SHADOW_DOMINANCE_RATIO * body:
        return CandlePattern.HANGING_MAN_BEAR
    if lower > SHADOW_DOMINANCE_RATIO * body:
        return CandlePattern.INVERTED_HAMMER_BEAR
    return CandlePattern.BEARISH


@dataclass
class AggregationResult:
    """Результат одного виклику агрегатора."""

    closed: list[Candle]
    live: Candle | None
    out_of_order: bool = False


class CandleAggregator:
    """Агрегує тики інструмента у свічки заданого таймфрейму.

    Свічка фіналізується в момент переходу на інший bucket. Тики зі старішого
    bucket, ніж поточна свічка, ігноруються (лічильник `out_of_order_ticks`).
    """

    def __init__(self, instrument: str, timeframe_seconds: int) -> None:
        if timeframe_seconds <= 0:
            raise ValueError("timeframe_seconds має бути > 0")
        self.instrument = instrument
        self.timeframe_seconds = int(timeframe_seconds)
        self.tf_label = _format_tf_label(self.timeframe_seconds)
        self.current: Candle | None = None
        self.history: list[Candle] = []
        self.ticks_ingested = 0
        self.closed_candles_emitted = 0
        self.out_of_order_ticks = 0

    def ingest(self, tick_time: int, value: float) -> AggregationResult:
        self.ticks_ingested += 1
        start = bucket_start(int(tick_time), self.timeframe_seconds)

        if self.current is None:
            self.current = Candle.opened_at(start, self.timeframe_seconds, value)
            return AggregationResult([], self.current)

        if start < self.current.bucket_start:
            self.out_of_order_ticks += 1
            return AggregationResult([], self.current, out_of_order=True)

        if start == self.current.bucket_start:
            self.current.update(value)
            return AggregationResult([], self.current)

        closed = self._finalize_current()
        self.current = Candle.opened_at(start, self.timeframe_seconds, value)
        return AggregationResult([closed], self.current)

    def seed(self, candles: Iterable[Mapping[str, float]]) -> None:
        """Ініціалізує історію зі знімка `candles`; остання свічка стає живою."""

        ordered = sorted(candles, key=lambda c: int(c["epoch"]))
        self.history = []
        self.current = None
        for item in ordered:
            candle = Candle(
                bucket_start=bucket_start(int(item["epoch"]), self.timeframe_seconds),
                timeframe_seconds=self.timeframe_seconds,
                open=float(item["open"]),
                high=float(item["high"]),
                low=float(item["low"]),
                close=float(item["close"]),
                tick_count=0,
            )
            if self.current is not None:
                self.current.complete = True
                self.history.append(self.current)
            self.current = candle

    def apply_live_update(
        self, open_time: int, open_: float, high: float, low: float, close: float
    ) -> AggregationResult:
        """Застосовує серверне live-оновлення OHLC для bucket `open_time`."""

        start = bucket_start(int(open_time), self.timeframe_seconds)
        closed: list[Candle] = []
        if self.current is not None:
            if start < self.current.bucket_start:
                self.out_of_order_ticks += 1
                return AggregationResult([], self.current, out_of_order=True)
            if start > self.current.bucket_start:
                closed.append(self._finalize_current())
        if self.current is None:
            self.current = Candle(
                bucket_start=start,
                timeframe_seconds=self.timeframe_seconds,
                open=open_,
                high=high,
                low=low,
                close=close,
                tick_count=0,
            )
        else:
            self.current.open = open_
            self.current.high = high
            self.current.low = low
            self.current.close = close
        return AggregationResult(closed, self.current)

    def reset(self) -> None:
        self.current = None
        self.history = []

    def _finalize_current(self) -> Candle:
        if self.current is None:
            raise RuntimeError("Немає свічки для фіналізації")
        candle = self.current
        candle.complete = True
        self.history.append(candle)
        self.closed_candles_emitted += 1
        self.current = None
        return candle
