"""Обмежене впорядковане вікно тиків на інструмент (Window Store).

Інваріант вікна: `sequence_key` суворо зростає, дублікатів немає. Нові live-тики
додаються через `append` (O(1), FIFO-виселення найстарішого), а повна заміна та
злиття з backfill проходять через `replace`, який сортує та дедуплікує вхід.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Deque, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

log = logging.getLogger("digit_feed.window")

MIN_PRECISION = 2


class TickOrigin(str, Enum):
    LIVE = "live"
    HISTORICAL = "historical"
    BACKFILL = "backfill"


# Для однакового ключа лишаємо тик із найвищим пріоритетом джерела —
# так результат злиття не залежить від порядку надходження відповідей.
_ORIGIN_PRIORITY = {
    TickOrigin.LIVE: 0,
    TickOrigin.HISTORICAL: 1,
    TickOrigin.BACKFILL: 2,
}


@dataclass(frozen=True)
class Tick:
    """Одне спостереження ціни. `sequence_key` — серверний epoch у секундах."""

    sequence_key: int
    value: float
    origin: TickOrigin = TickOrigin.LIVE
    received_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, object]:
        return {
            "epoch": self.sequence_key,
            "quote": self.value,
            "source": self.origin.value,
            "local_time": self.received_at,
        }


def _sort_and_dedup(ticks: Iterable[Tick]) -> List[Tick]:
    ordered = sorted(ticks, key=lambda t: (t.sequence_key, _ORIGIN_PRIORITY[t.origin]))
    result: List[Tick] = []
    last_key: Optional[int] = None
    for tick in ordered:
        if tick.sequence_key == last_key:
            continue
        result.append(tick)
        last_key = tick.sequence_key
    return result


class TickWindow:
    """Вікно тиків одного інструмента з фіксованою ємністю."""

    def __init__(self, instrument: str, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError("capacity має бути > 0")
        self.instrument = instrument
        self.capacity = int(capacity)
        self._ticks: Deque[Tick] = deque(maxlen=self.capacity)
        self.rejected_ticks = 0
        self.evicted_ticks = 0

    def __len__(self) -> int:
        return len(self._ticks)

    def __iter__(self) -> Iterator[Tick]:
        return iter(self._ticks)

    @property
    def last_key(self) -> Optional[int]:
        if not self._ticks:
            return None
        return self._ticks[-1].sequence_key

    @property
    def last_tick(self) -> Optional[Tick]:
        if not self._ticks:
            return None
        return self._ticks[-1]

    def keys(self) -> List[int]:
        return [tick.sequence_key for tick in self._ticks]

    def values(self) -> List[float]:
        return [tick.value for tick in self._ticks]

    def ticks(self) -> List[Tick]:
        return list(self._ticks)

    def tail(self, count: int) -> List[Tick]:
        if count <= 0:
            return []
        if count >= len(self._ticks):
            return list(self._ticks)
        return list(self._ticks)[-count:]

    def append(self, tick: Tick) -> bool:
        last_key = self.last_key
        if last_key is not None and tick.sequence_key <= last_key:
            self.rejected_ticks += 1
            log.debug(
                "[%s] Відкинуто застарілий/дубльований тик key=%s (останній=%s).",
                self.instrument,
                tick.sequence_key,
                last_key,
            )
            return False
        if len(self._ticks) == self.capacity:
            self.evicted_ticks += 1
        self._ticks.append(tick)
        return True

    def replace(self, ticks: Iterable[Tick]) -> int:
        """Встановлює новий вміст: сортування, дедуплікація, обрізання до ємності."""

        cleaned = _sort_and_dedup(ticks)
        if len(cleaned) > self.capacity:
            self.evicted_ticks += len(cleaned) - self.capacity
            cleaned = cleaned[-self.capacity :]
        self._ticks = deque(cleaned, maxlen=self.capacity)
        return len(self._ticks)

    def merge(self, ticks: Iterable[Tick]) -> int:
        """Зливає додаткові тики з поточним вмістом; повертає кількість нових ключів."""

        before = set(self.keys())
        incoming = list(ticks)
        self.replace([*self._ticks, *incoming])
        after = set(self.keys())
        return len(after - before)

    def clear(self) -> None:
        self._ticks.clear()


class WindowStore:
    """Карта `instrument -> TickWindow`; єдина точка мутації вікон."""

    def __init__(self, capacity: int) -> None:
        self.capacity = int(capacity)
        self._windows: Dict[str, TickWindow] = {}

    def __contains__(self, instrument: object) -> bool:
        return instrument in self._windows

    def instruments(self) -> List[str]:
        return list(self._windows)

    def create(self, instrument: str) -> TickWindow:
        window = self._windows.get(instrument)
        if window is None:
            window = TickWindow(instrument, self.capacity)
            self._windows[instrument] = window
        return window

    def get(self, instrument: str) -> TickWindow:
        try:
            return self._windows[instrument]
        except KeyError:
            raise KeyError(f"Вікно для {instrument!r} не створено") from None

    def append(self, instrument: str, tick: Tick) -> bool:
        return self.get(instrument).append(tick)

    def replace(self, instrument: str, ticks: Iterable[Tick]) -> int:
        return self.get(instrument).replace(ticks)

    def merge(self, instrument: str, ticks: Iterable[Tick]) -> int:
        return self.get(instrument).merge(ticks)

    def clear(self, instrument: str) -> None:
        self.get(instrument).clear()

    def drop(self, instrument: str) -> None:
        window = self._windows.pop(instrument, None)
        if window is not None:
            window.clear()


# ── Цифри та точність ──────────────────────────────────────────────────────


def fraction_digits(value: float) -> str:
    """Дробова частина числа без хвостових нулів (як у рядковому поданні JS)."""

    try:
        text = format(Decimal(repr(float(value))), "f")
    except (InvalidOperation, ValueError):
        return ""
    if "." not in text:
        return ""
    return text.split(".", 1)[1].rstrip("0")


def detect_precision(values: Iterable[float], *, floor: int = MIN_PRECISION) -> int:
    """Максимальна кількість дробових знаків у вікні, не менше `floor`."""

    best = floor
    for value in values:
        digits = len(fraction_digits(value))
        if digits > best:
            best = digits
    return best


def digit_of(value: float, precision: int, position: Optional[int] = None) -> int:
    """Повертає відстежувану цифру значення.

    Дробова частина доповнюється нулями справа до `max(precision, position)`.
    Профіль `last` (position=None) бере цифру на позиції `precision` — тобто
    останню цифру при автовизначеній точності. Профіль `fixed:N` бере N-ту цифру
    після коми незалежно від точності.

    >>> digit_of(121.56, 2)
    6
    >>> digit_of(121.5, 2)
    0
    """

    target = int(position) if position is not None else int(precision)
    if target < 1:
        raise ValueError("Позиція цифри має бути >= 1")
    decimals = fraction_digits(value).ljust(max(int(precision), target), "0")
    return int(decimals[target - 1])


def digits_of(values: Sequence[float], precision: int, position: Optional[int] = None) -> List[int]:
    return [digit_of(value, precision, position) for value in values]


def ticks_from_pairs(
    pairs: Iterable[Tuple[int, float]],
    origin: TickOrigin,
    *,
    received_at: Optional[float] = None,
) -> List[Tick]:
    stamp = time.time() if received_at is None else received_at
    return [
        Tick(sequence_key=int(key), value=float(value), origin=origin, received_at=stamp)
        for key, value in pairs
    ]
