"""Тести контролю цілісності: розриви, backfill, звірка, планування проходів."""

from __future__ import annotations

import asyncio
import unittest
from typing import List, Optional, Tuple

from config import IntegritySettings
from context import ContextRegistry
from history_client import HistoryFetchError
from integrity import (
    BackfillStatus,
    Gap,
    IntegrityMonitor,
    backfill,
    compare,
    detect_gaps,
)
from tick_window import Tick, TickOrigin, TickWindow, WindowStore

SETTINGS = IntegritySettings(
    gap_check_interval_seconds=120.0,
    compare_interval_seconds=120.0,
    resync_interval_seconds=300.0,
    compare_count=100,
    expected_step=1,
    value_tolerance=1e-8,
)


def fill_window(window: TickWindow, keys, value=lambda k: 100.0 + k / 100.0) -> None:
    window.replace([Tick(k, value(k), TickOrigin.HISTORICAL, 0.0) for k in keys])


class FakeHistorySource:
    def __init__(self, pairs: List[Tuple[int, float]], *, fail_on: Optional[set] = None) -> None:
        self.pairs = pairs
        self.fail_on = fail_on or set()
        self.range_calls: List[Tuple[str, int, int, int]] = []
        self.latest_calls: List[Tuple[str, int]] = []
        self.latest_error: Optional[Exception] = None

    async def fetch_range(self, instrument, start_key, end_key, count):
        self.range_calls.append((instrument, start_key, end_key, count))
        if start_key in self.fail_on:
            raise HistoryFetchError("timeout")
        # Джерело повертає і сусідні ключі, фільтр має їх відсіяти.
        return [(k, v) for k, v in self.pairs if start_key - 1 <= k <= end_key + 1]

    async def fetch_latest(self, instrument, count):
        self.latest_calls.append((instrument, count))
        if self.latest_error is not None:
            raise self.latest_error
        return self.pairs[-count:]


class BlockingSource(FakeHistorySource):
    def __init__(self, pairs) -> None:
        super().__init__(pairs)
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_range(self, instrument, start_key, end_key, count):
        self.started.set()
        await self.release.wait()
        return await super().fetch_range(instrument, start_key, end_key, count)

    async def fetch_latest(self, instrument, count):
        self.started.set()
        await self.release.wait()
        return await super().fetch_latest(instrument, count)


class TestDetectGaps:
    def test_single_gap(self) -> None:
        assert detect_gaps([1, 2, 4, 5]) == [Gap(2, 4)]

    def test_no_gaps_and_custom_step(self) -> None:
        assert detect_gaps([1, 2, 3]) == []
        assert detect_gaps([]) == []
        assert detect_gaps([2, 4, 6, 10], expected_step=2) == [Gap(6, 10)]


class BackfillTest(unittest.IsolatedAsyncioTestCase):
    async def test_backfill_inserts_only_keys_inside_gap(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 2, 4, 5])
        source = FakeHistorySource([(2, 9.0), (3, 3.3), (4, 9.0)])

        report = await backfill(window, source)

        assert source.range_calls == [("R_100", 3, 3, 1)]
        assert window.keys() == [1, 2, 3, 4, 5]
        inserted = window.ticks()[2]
        assert inserted.value == 3.3
        assert inserted.origin is TickOrigin.BACKFILL
        assert window.ticks()[1].value != 9.0
        assert report.status is BackfillStatus.OK
        assert report.inserted == 1

    async def test_per_gap_failures_are_isolated(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 3, 10, 12])
        source = FakeHistorySource([(2, 2.0), (11, 11.0)], fail_on={4})

        report = await backfill(window, source)

        assert report.status is BackfillStatus.PARTIAL
        assert [result.ok for result in report.results] == [True, False, True]
        assert window.keys() == [1, 2, 3, 10, 11, 12]

    async def test_all_gaps_failed_and_clean_pass(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 3])
        failed = await backfill(window, FakeHistorySource([], fail_on={2}))
        assert failed.status is BackfillStatus.FAILED
        assert window.keys() == [1, 3]

        fill_window(window, [1, 2, 3])
        clean = await backfill(window, FakeHistorySource([]))
        assert clean.status is BackfillStatus.CLEAN


class CompareTest(unittest.IsolatedAsyncioTestCase):
    async def test_matching_tails(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, range(1, 11), value=float)
        source = FakeHistorySource([(k, float(k)) for k in range(5, 11)])

        report = await compare(window, source, 100)

        assert report.ok
        assert report.compared == 6

    async def test_value_and_key_mismatches(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 2, 3, 4], value=float)
        source = FakeHistorySource([(1, 1.0), (2, 2.5), (3, 3.0), (5, 4.0)])

        report = await compare(window, source, 4)

        assert report.compared == 4
        assert [m.position for m in report.mismatches] == [1, 3]
        assert report.mismatches[1].local_key == 4
        assert report.mismatches[1].remote_key == 5

    async def test_tolerance(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1], value=lambda k: 1.0)
        report = await compare(window, FakeHistorySource([(1, 1.0 + 1e-9)]), 1)
        assert report.ok

    async def test_live_ticks_newer_than_remote_are_not_compared(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 2, 3, 4], value=float)
        report = await compare(window, FakeHistorySource([(1, 1.0), (2, 2.0)]), 10)
        assert report.ok
        assert report.compared == 2
        assert report.ahead == 2
        assert report.to_dict()["ahead"] == 2

    async def test_fetch_failure_leaves_window_untouched(self) -> None:
        window = TickWindow("R_100", capacity=100)
        fill_window(window, [1, 2, 3])
        before = window.ticks()
        source = FakeHistorySource([])
        source.latest_error = HistoryFetchError("boom")

        report = await compare(window, source, 10)

        assert report.error is not None
        assert not report.ok
        assert window.ticks() == before


class IntegrityMonitorTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.registry = ContextRegistry(WindowStore(100), timeframe_seconds=120)
        self.ctx = self.registry.create("R_100")
        fill_window(self.ctx.window, [1, 2, 4, 5])
        self.resyncs: List[str] = []
        self.reports = []

    def make_monitor(self, source) -> IntegrityMonitor:
        return IntegrityMonitor(
            self.registry,
            source,
            SETTINGS,
            on_resync=self.resyncs.append,
            on_report=lambda instrument, report: self.reports.append(report),
        )

    async def test_gap_pass_repairs_window_and_reports(self) -> None:
        monitor = self.make_monitor(FakeHistorySource([(3, 3.0)]))

        report = await monitor.run_gap_pass("R_100")

        assert report is not None and report.status is BackfillStatus.OK
        assert self.ctx.window.keys() == [1, 2, 3, 4, 5]
        assert self.ctx.last_backfill is report
        assert self.reports == [report]
        assert self.ctx.pass_in_flight is None

    async def test_scheduled_pass_skipped_while_another_in_flight(self) -> None:
        source = BlockingSource([(3, 3.0)])
        monitor = self.make_monitor(source)

        gap_task = asyncio.ensure_future(monitor.run_gap_pass("R_100"))
        await source.started.wait()

        assert await monitor.run_compare_pass("R_100") is None
        assert await monitor.resync("R_100") is False
        assert self.ctx.skipped_passes == 2

        source.release.set()
        report = await gap_task
        assert report is not None
        assert self.ctx.pass_in_flight is None

    async def test_results_voided_after_unsubscribe(self) -> None:
        source = BlockingSource([(3, 3.0)])
        monitor = self.make_monitor(source)

        gap_task = asyncio.ensure_future(monitor.run_gap_pass("R_100"))
        await source.started.wait()
        monitor.detach(self.ctx)
        self.registry.drop("R_100")
        source.release.set()

        assert await gap_task is None
        assert self.ctx.voided_passes == 1
        assert self.ctx.last_backfill is None
        assert self.reports == []

    async def test_manual_resync_voids_in_flight_pass(self) -> None:
        source = BlockingSource([(3, 3.0)])
        monitor = self.make_monitor(source)

        compare_task = asyncio.ensure_future(monitor.run_compare_pass("R_100"))
        await source.started.wait()

        assert await monitor.resync("R_100", manual=True) is True
        assert self.resyncs == ["R_100"]
        assert len(self.ctx.window) == 0
        assert self.ctx.resync_count == 1

        source.release.set()
        assert await compare_task is None
        assert self.ctx.last_comparison is None
        assert self.ctx.pass_in_flight is None

    async def test_attach_and_detach_timers(self) -> None:
        monitor = self.make_monitor(FakeHistorySource([]))
        monitor.attach(self.ctx)
        assert len(self.ctx.timers) == 3
        assert all(timer.running for timer in self.ctx.timers)
        timers = list(self.ctx.timers)
        generation = self.ctx.generation

        monitor.detach(self.ctx)
        await asyncio.sleep(0)

        assert self.ctx.timers == []
        assert not any(timer.running for timer in timers)
        assert self.ctx.generation == generation + 1
