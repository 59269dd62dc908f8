"""Контроль цілісності вікна: розриви, backfill, звірка та ресинхронізація.

Проходи інструмента (gap+backfill, звірка, планова ресинхронізація) ніколи не
виконуються паралельно: якщо таймер спрацював, поки інший прохід у польоті,
спрацювання пропускається і рахується. Ручна ресинхронізація інвалідує прохід
у польоті і виконується одразу.
"""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from typing_extensions import Protocol

from config import IntegritySettings
from context import ContextRegistry, InstrumentContext
from feed_schema import ProtocolError, UpstreamDataError
from history_client import HistoryFetchError
from metrics import (
    PROM_BACKFILL_PASSES,
    PROM_BACKFILL_TICKS,
    PROM_COMPARISON_FAILURES,
    PROM_COMPARISON_MISMATCHES,
    PROM_GAPS_DETECTED,
    PROM_RESYNCS,
    PROM_SKIPPED_PASSES,
    PROM_VOIDED_PASSES,
)
from scheduling import PeriodicTask
from tick_window import Tick, TickOrigin, TickWindow, ticks_from_pairs

log = logging.getLogger("digit_feed.integrity")

MAX_HISTORY_COUNT = 5_000
PASS_GAP = "gap"
PASS_COMPARE = "compare"
PASS_RESYNC = "resync"

_FETCH_ERRORS = (HistoryFetchError, UpstreamDataError, ProtocolError)


class BackfillError(RuntimeError):
    """Помилка заповнення одного розриву (ізолюється в межах розриву)."""


class ComparisonError(RuntimeError):
    """Помилка проходу звірки (вікно не змінюється)."""


class HistorySource(Protocol):
    async def fetch_range(
        self, instrument: str, start_key: int, end_key: int, count: int
    ) -> List[Tuple[int, float]]: ...

    async def fetch_latest(self, instrument: str, count: int) -> List[Tuple[int, float]]: ...


@dataclass(frozen=True)
class Gap:
    from_key: int
    to_key: int

    @property
    def missing(self) -> int:
        return self.to_key - self.from_key - 1


def detect_gaps(keys: Sequence[int], expected_step: int = 1) -> List[Gap]:
    """Сусідні ключі з різницею, відмінною від `expected_step`.

    >>> detect_gaps([1, 2, 4, 5])
    [Gap(from_key=2, to_key=4)]
    """

    gaps: List[Gap] = []
    for prev, cur in zip(keys, keys[1:]):
        if cur - prev != expected_step:
            gaps.append(Gap(prev, cur))
    return gaps


class BackfillStatus(str, Enum):
    CLEAN = "clean"
    OK = "ok"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass(frozen=True)
class GapFillResult:
    gap: Gap
    ticks: Tuple[Tick, ...] = ()
    inserted: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class BackfillReport:
    instrument: str
    results: Tuple[GapFillResult, ...] = ()

    @property
    def status(self) -> BackfillStatus:
        if not self.results:
            return BackfillStatus.CLEAN
        failed = sum(1 for result in self.results if not result.ok)
        if failed == 0:
            return BackfillStatus.OK
        if failed == len(self.results):
            return BackfillStatus.FAILED
        return BackfillStatus.PARTIAL

    @property
    def inserted(self) -> int:
        return sum(result.inserted for result in self.results)

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "status": self.status.value,
            "gaps": len(self.results),
            "inserted": self.inserted,
            "errors": [result.error for result in self.results if result.error],
        }


@dataclass(frozen=True)
class Mismatch:
    position: int
    local_key: int
    local_value: float
    remote_key: int
    remote_value: float


@dataclass(frozen=True)
class ComparisonReport:
    instrument: str
    compared: int = 0
    mismatches: Tuple[Mismatch, ...] = ()
    ahead: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.mismatches

    def to_dict(self) -> dict:
        return {
            "instrument": self.instrument,
            "compared": self.compared,
            "mismatches": len(self.mismatches),
            "ahead": self.ahead,
            "error": self.error,
        }


async def _fetch_gap(source: HistorySource, instrument: str, gap: Gap) -> GapFillResult:
    start = gap.from_key + 1
    end = gap.to_key - 1
    count = min(MAX_HISTORY_COUNT, max(1, gap.missing))
    try:
        if end < start:
            raise BackfillError(f"Порожній інтервал розриву {gap.from_key}..{gap.to_key}")
        pairs = await source.fetch_range(instrument, start, end, count)
    except BackfillError as exc:
        return GapFillResult(gap=gap, error=str(exc))
    except _FETCH_ERRORS as exc:
        return GapFillResult(gap=gap, error=str(BackfillError(f"{gap.from_key}..{gap.to_key}: {exc}")))
    inside = [(key, value) for key, value in pairs if gap.from_key < key < gap.to_key]
    return GapFillResult(gap=gap, ticks=tuple(ticks_from_pairs(inside, TickOrigin.BACKFILL)))


async def fill_gaps(source: HistorySource, instrument: str, gaps: Sequence[Gap]) -> List[GapFillResult]:
    """Завантажує тики для кожного розриву; помилки ізолюються в результаті розриву."""

    results: List[GapFillResult] = []
    for gap in gaps:
        results.append(await _fetch_gap(source, instrument, gap))
    return results


def apply_fills(window: TickWindow, results: Sequence[GapFillResult]) -> BackfillReport:
    """Зливає завантажені тики у вікно (сортування + дедуплікація)."""

    applied: List[GapFillResult] = []
    for result in results:
        inserted = window.merge(result.ticks) if result.ticks else 0
        applied.append(
            GapFillResult(gap=result.gap, ticks=result.ticks, inserted=inserted, error=result.error)
        )
    return BackfillReport(instrument=window.instrument, results=tuple(applied))


async def backfill(
    window: TickWindow,
    source: HistorySource,
    gaps: Optional[Sequence[Gap]] = None,
    *,
    expected_step: int = 1,
) -> BackfillReport:
    if gaps is None:
        gaps = detect_gaps(window.keys(), expected_step)
    if not gaps:
        return BackfillReport(instrument=window.instrument)
    results = await fill_gaps(source, window.instrument, gaps)
    return apply_fills(window, results)


def align_tails(
    local: Sequence[Tick],
    remote: Sequence[Tuple[int, float]],
    tolerance: float,
) -> Tuple[int, List[Mismatch]]:
    """Порівнює хвости за позицією; лише спільний суфікс."""

    overlap = min(len(local), len(remote))
    if overlap == 0:
        return 0, []
    local_tail = list(local)[-overlap:]
    remote_tail = list(remote)[-overlap:]
    mismatches: List[Mismatch] = []
    for position, (tick, (remote_key, remote_value)) in enumerate(zip(local_tail, remote_tail)):
        if tick.sequence_key != remote_key or abs(tick.value - remote_value) > tolerance:
            mismatches.append(
                Mismatch(
                    position=position,
                    local_key=tick.sequence_key,
                    local_value=tick.value,
                    remote_key=int(remote_key),
                    remote_value=float(remote_value),
                )
            )
    return overlap, mismatches


async def compare(
    window: TickWindow,
    source: HistorySource,
    count: int,
    *,
    tolerance: float = 1e-8,
) -> ComparisonReport:
    """Звіряє хвіст вікна з незалежним джерелом; вікно не змінюється.

    Live-тики, що надійшли після відповіді джерела, у звірку не потрапляють:
    локальний хвіст обрізається по останньому ключу відповіді. Такі тики
    рахуються у `ahead`; хибний локальний тик за межею відповіді джерела
    тут не виявляється, його ловить наступна звірка.
    """

    k = max(1, min(100, int(count)))
    try:
        remote = await source.fetch_latest(window.instrument, k)
    except _FETCH_ERRORS as exc:
        error = ComparisonError(f"Звірка {window.instrument} неуспішна: {exc}")
        return ComparisonReport(instrument=window.instrument, error=str(error))
    remote = sorted(remote)[-k:]
    ahead = 0
    if remote:
        last_remote_key = remote[-1][0]
        ticks = window.ticks()
        local = [tick for tick in ticks if tick.sequence_key <= last_remote_key][-k:]
        ahead = sum(1 for tick in ticks if tick.sequence_key > last_remote_key)
    else:
        local = window.tail(k)
    compared, mismatches = align_tails(local, remote, tolerance)
    return ComparisonReport(
        instrument=window.instrument,
        compared=compared,
        mismatches=tuple(mismatches),
        ahead=ahead,
    )


ResyncCallback = Callable[[str], Union[None, Awaitable[Any]]]
ReportListener = Callable[[str, Union[BackfillReport, ComparisonReport]], None]


class IntegrityMonitor:
    """Планувальник проходів цілісності для всіх контекстів реєстру."""

    def __init__(
        self,
        registry: ContextRegistry,
        source: HistorySource,
        settings: IntegritySettings,
        *,
        on_resync: ResyncCallback,
        on_report: Optional[ReportListener] = None,
    ) -> None:
        self._registry = registry
        self._source = source
        self._settings = settings
        self._on_resync = on_resync
        self._on_report = on_report

    def attach(self, ctx: InstrumentContext) -> None:
        instrument = ctx.instrument
        ctx.cancel_timers()
        ctx.timers = [
            PeriodicTask(
                f"{instrument}:gap",
                self._settings.gap_check_interval_seconds,
                lambda: self.run_gap_pass(instrument),
            ),
            PeriodicTask(
                f"{instrument}:compare",
                self._settings.compare_interval_seconds,
                lambda: self.run_compare_pass(instrument),
            ),
            PeriodicTask(
                f"{instrument}:resync",
                self._settings.resync_interval_seconds,
                lambda: self.resync(instrument),
            ),
        ]
        for timer in ctx.timers:
            timer.start()

    def detach(self, ctx: InstrumentContext) -> None:
        ctx.cancel_timers()
        ctx.bump_generation()
        ctx.pass_in_flight = None

    def _begin(self, ctx: InstrumentContext, pass_name: str) -> bool:
        if ctx.pass_in_flight is not None:
            ctx.skipped_passes += 1
            PROM_SKIPPED_PASSES.labels(instrument=ctx.instrument, pass_name=pass_name).inc()
            log.debug(
                "[%s] Прохід %s пропущено: у польоті %s.", ctx.instrument, pass_name, ctx.pass_in_flight
            )
            return False
        ctx.pass_in_flight = pass_name
        return True

    @staticmethod
    def _end(ctx: InstrumentContext, generation: int) -> None:
        if ctx.generation == generation:
            ctx.pass_in_flight = None

    def _voided(self, ctx: InstrumentContext, generation: int, pass_name: str) -> bool:
        current = self._registry.find(ctx.instrument)
        if current is ctx and ctx.generation == generation:
            return False
        ctx.voided_passes += 1
        PROM_VOIDED_PASSES.labels(instrument=ctx.instrument, pass_name=pass_name).inc()
        log.info("[%s] Результат проходу %s відкинуто (покоління змінилось).", ctx.instrument, pass_name)
        return True

    async def run_gap_pass(self, instrument: str) -> Optional[BackfillReport]:
        ctx = self._registry.find(instrument)
        if ctx is None or not self._begin(ctx, PASS_GAP):
            return None
        generation = ctx.generation
        try:
            gaps = detect_gaps(ctx.window.keys(), self._settings.expected_step)
            if gaps:
                PROM_GAPS_DETECTED.labels(instrument=instrument).inc(len(gaps))
                log.warning("[%s] Виявлено розривів: %d.", instrument, len(gaps))
                results = await fill_gaps(self._source, instrument, gaps)
                if self._voided(ctx, generation, PASS_GAP):
                    return None
                report = apply_fills(ctx.window, results)
            else:
                report = BackfillReport(instrument=instrument)
            ctx.last_backfill = report
            PROM_BACKFILL_PASSES.labels(instrument=instrument, status=report.status.value).inc()
            if report.inserted:
                PROM_BACKFILL_TICKS.labels(instrument=instrument).inc(report.inserted)
            if report.status in (BackfillStatus.PARTIAL, BackfillStatus.FAILED):
                log.warning("[%s] Backfill %s: %s", instrument, report.status.value, report.to_dict())
            elif report.results:
                log.info("[%s] Backfill: вставлено %d тиків.", instrument, report.inserted)
            self._notify(instrument, report)
            return report
        finally:
            self._end(ctx, generation)

    async def run_compare_pass(self, instrument: str) -> Optional[ComparisonReport]:
        ctx = self._registry.find(instrument)
        if ctx is None or not self._begin(ctx, PASS_COMPARE):
            return None
        generation = ctx.generation
        try:
            report = await compare(
                ctx.window,
                self._source,
                self._settings.compare_count,
                tolerance=self._settings.value_tolerance,
            )
            if self._voided(ctx, generation, PASS_COMPARE):
                return None
            ctx.last_comparison = report
            if report.error:
                PROM_COMPARISON_FAILURES.labels(instrument=instrument).inc()
                log.warning("[%s] %s", instrument, report.error)
            elif report.mismatches:
                PROM_COMPARISON_MISMATCHES.labels(instrument=instrument).inc(len(report.mismatches))
                log.warning(
                    "[%s] Звірка: %d розбіжностей на %d тиків.",
                    instrument,
                    len(report.mismatches),
                    report.compared,
                )
            else:
                log.debug("[%s] Звірка: %d тиків збігаються.", instrument, report.compared)
            self._notify(instrument, report)
            return report
        finally:
            self._end(ctx, generation)

    async def resync(self, instrument: str, *, manual: bool = False) -> bool:
        """Очищує стан інструмента і засіває його заново свіжою історією."""

        ctx = self._registry.find(instrument)
        if ctx is None:
            return False
        if manual:
            if ctx.pass_in_flight is not None:
                log.info("[%s] Ручний resync інвалідує прохід %s.", instrument, ctx.pass_in_flight)
            ctx.pass_in_flight = None
        elif not self._begin(ctx, PASS_RESYNC):
            return False
        generation = ctx.bump_generation()
        ctx.pass_in_flight = PASS_RESYNC
        try:
            ctx.reset_state()
            ctx.resync_count += 1
            PROM_RESYNCS.labels(instrument=instrument, trigger="manual" if manual else "timer").inc()
            log.info("[%s] Resync (%s): вікно очищено.", instrument, "manual" if manual else "timer")
            result = self._on_resync(instrument)
            if inspect.isawaitable(result):
                await result
        finally:
            self._end(ctx, generation)
        return True

    def _notify(self, instrument: str, report: Union[BackfillReport, ComparisonReport]) -> None:
        if self._on_report is not None:
            self._on_report(instrument, report)
