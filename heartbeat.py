"""Детектор застою стріму (heartbeat) для кожного інструмента.

Переходи: `live -> stale` після `warn_after_seconds` без прийнятого тику (лише
звіт), `stale -> resubscribing` після `resubscribe_after_seconds` із командою
переспідписки. Повторна переспідписка не частіше одного разу на жорсткий
інтервал. Наступний прийнятий тик повертає стан у `live`.
"""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from config import HeartbeatSettings
from scheduling import PeriodicTask

log = logging.getLogger("digit_feed.heartbeat")


class FeedHealth(str, Enum):
    LIVE = "live"
    STALE = "stale"
    RESUBSCRIBING = "resubscribing"


ResubscribeCallback = Callable[[str], Union[None, Awaitable[Any]]]
HealthListener = Callable[[str, FeedHealth, float], None]
SilenceListener = Callable[[str, float], None]


@dataclass
class _InstrumentBeat:
    last_accepted_at: float
    health: FeedHealth = FeedHealth.LIVE
    last_resubscribe_at: Optional[float] = None
    resubscribe_count: int = 0


class HeartbeatMonitor:
    def __init__(
        self,
        settings: HeartbeatSettings,
        on_resubscribe: ResubscribeCallback,
        *,
        on_health_change: Optional[HealthListener] = None,
        on_silence: Optional[SilenceListener] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._settings = settings
        self._on_resubscribe = on_resubscribe
        self._on_health_change = on_health_change
        self._on_silence = on_silence
        self._clock = clock
        self._beats: Dict[str, _InstrumentBeat] = {}
        self._task = PeriodicTask("heartbeat", settings.check_interval_seconds, self.check)

    def register(self, instrument: str) -> None:
        self._beats[instrument] = _InstrumentBeat(last_accepted_at=self._clock())

    def unregister(self, instrument: str) -> None:
        self._beats.pop(instrument, None)

    def health(self, instrument: str) -> Optional[FeedHealth]:
        beat = self._beats.get(instrument)
        return beat.health if beat is not None else None

    def silence_seconds(self, instrument: str, now: Optional[float] = None) -> Optional[float]:
        beat = self._beats.get(instrument)
        if beat is None:
            return None
        current = self._clock() if now is None else now
        return max(0.0, current - beat.last_accepted_at)

    def resubscribe_count(self, instrument: str) -> int:
        beat = self._beats.get(instrument)
        return beat.resubscribe_count if beat is not None else 0

    def mark_tick(self, instrument: str) -> None:
        beat = self._beats.get(instrument)
        if beat is None:
            return
        beat.last_accepted_at = self._clock()
        beat.last_resubscribe_at = None
        if beat.health is not FeedHealth.LIVE:
            log.info("[%s] Стрім відновився, стан live.", instrument)
            self._set_health(instrument, beat, FeedHealth.LIVE, 0.0)

    async def check(self, now: Optional[float] = None) -> List[str]:
        """Один прохід перевірки; повертає інструменти, для яких ініційовано переспідписку."""

        current = self._clock() if now is None else now
        resubscribed: List[str] = []
        for instrument, beat in list(self._beats.items()):
            silence = max(0.0, current - beat.last_accepted_at)
            if self._on_silence is not None:
                self._on_silence(instrument, silence)
            if silence >= self._settings.resubscribe_after_seconds:
                last = beat.last_resubscribe_at
                if last is not None and current - last < self._settings.resubscribe_after_seconds:
                    continue
                beat.last_resubscribe_at = current
                beat.resubscribe_count += 1
                self._set_health(instrument, beat, FeedHealth.RESUBSCRIBING, silence)
                log.warning(
                    "[%s] Немає тиків %.1f с — переспідписка (спроба %d).",
                    instrument,
                    silence,
                    beat.resubscribe_count,
                )
                resubscribed.append(instrument)
                result = self._on_resubscribe(instrument)
                if inspect.isawaitable(result):
                    await result
            elif silence >= self._settings.warn_after_seconds:
                if beat.health is FeedHealth.LIVE:
                    log.warning("[%s] Стрім застій: %.1f с без тиків.", instrument, silence)
                    self._set_health(instrument, beat, FeedHealth.STALE, silence)
        return resubscribed

    def start(self) -> None:
        self._task.start()

    def stop(self) -> None:
        self._task.cancel()

    def _set_health(
        self, instrument: str, beat: _InstrumentBeat, health: FeedHealth, silence: float
    ) -> None:
        beat.health = health
        if self._on_health_change is not None:
            self._on_health_change(instrument, health, silence)
