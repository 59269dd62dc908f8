"""Контекст інструмента та реєстр контекстів.

Контекст володіє вікном тиків, агрегатором свічок, таймерами інтеграції та
лічильником покоління. Кожне відписування чи ресинхронізація збільшує
покоління, і результати проходів, запущених зі старим поколінням, відкидаються.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, Iterator, List, Mapping, Optional

from tick_ohlcv import CandleAggregator
from tick_window import TickWindow, WindowStore

if TYPE_CHECKING:
    from digit_stats import StatisticsSnapshot
    from integrity import BackfillReport, ComparisonReport
    from scheduling import PeriodicTask

log = logging.getLogger("digit_feed.context")


@dataclass
class InstrumentContext:
    instrument: str
    window: TickWindow
    candles: CandleAggregator
    digit_position: Optional[int] = None
    generation: int = 0
    pass_in_flight: Optional[str] = None
    skipped_passes: int = 0
    voided_passes: int = 0
    resync_count: int = 0
    timers: List["PeriodicTask"] = field(default_factory=list)
    snapshot: Optional["StatisticsSnapshot"] = None
    last_backfill: Optional["BackfillReport"] = None
    last_comparison: Optional["ComparisonReport"] = None

    def bump_generation(self) -> int:
        self.generation += 1
        return self.generation

    def cancel_timers(self) -> None:
        for timer in self.timers:
            timer.cancel()
        self.timers = []

    def reset_state(self) -> None:
        """Очищує вікно, свічки та знімок перед повторним засіванням історією."""

        self.window.clear()
        self.candles.reset()
        self.snapshot = None


class ContextRegistry:
    """Арена контекстів, ключована ідентифікатором інструмента."""

    def __init__(
        self,
        store: WindowStore,
        *,
        timeframe_seconds: int,
        digit_profiles: Optional[Mapping[str, Optional[int]]] = None,
    ) -> None:
        self._store = store
        self._timeframe_seconds = int(timeframe_seconds)
        self._digit_profiles = dict(digit_profiles or {})
        self._contexts: Dict[str, InstrumentContext] = {}

    def __contains__(self, instrument: object) -> bool:
        return instrument in self._contexts

    def __iter__(self) -> Iterator[InstrumentContext]:
        return iter(list(self._contexts.values()))

    def __len__(self) -> int:
        return len(self._contexts)

    @property
    def store(self) -> WindowStore:
        return self._store

    def instruments(self) -> List[str]:
        return list(self._contexts)

    def create(self, instrument: str) -> InstrumentContext:
        ctx = self._contexts.get(instrument)
        if ctx is not None:
            return ctx
        ctx = InstrumentContext(
            instrument=instrument,
            window=self._store.create(instrument),
            candles=CandleAggregator(instrument, self._timeframe_seconds),
            digit_position=self._digit_profiles.get(instrument),
        )
        self._contexts[instrument] = ctx
        log.debug("[%s] Створено контекст інструмента.", instrument)
        return ctx

    def get(self, instrument: str) -> InstrumentContext:
        try:
            return self._contexts[instrument]
        except KeyError:
            raise KeyError(f"Контекст для {instrument!r} відсутній") from None

    def find(self, instrument: str) -> Optional[InstrumentContext]:
        return self._contexts.get(instrument)

    def drop(self, instrument: str) -> Optional[InstrumentContext]:
        """Скасовує таймери, інвалідує покоління та звільняє вікно інструмента."""

        ctx = self._contexts.pop(instrument, None)
        if ctx is None:
            return None
        ctx.cancel_timers()
        ctx.bump_generation()
        ctx.pass_in_flight = None
        ctx.candles.reset()
        ctx.snapshot = None
        self._store.drop(instrument)
        log.debug("[%s] Контекст звільнено.", instrument)
        return ctx
