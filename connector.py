"""Digit-feed конектор: стрім тиків, контроль цілісності вікна та статистика цифр.

Потік:
- `FeedConnection` декодує повідомлення фіду і передає їх у `DigitFeedPipeline`;
- pipeline додає/замінює тики у вікні інструмента, перераховує статистику,
  скидає heartbeat та публікує знімок;
- `IntegrityMonitor` на власних таймерах шукає розриви, добирає їх з історії,
  звіряє хвіст із незалежним джерелом і періодично робить повний resync.

Приклад запуску:
    $ python connector.py --instruments R_100,R_50
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import time
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import websockets
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

from config import DigitFeedConfig, load_config
from context import ContextRegistry, InstrumentContext
from digit_stats import compute_snapshot
from export_utils import build_export_payload, write_export, write_tick_log
from feed_connection import ConnectionState, FeedConnection, FeedFailedError
from feed_schema import (
    AckMessage,
    CandlesMessage,
    ErrorMessage,
    HistoryMessage,
    InboundMessage,
    OhlcMessage,
    TickMessage,
)
from heartbeat import FeedHealth, HeartbeatMonitor
from history_client import DerivHistoryClient
from integrity import BackfillReport, ComparisonReport, HistorySource, IntegrityMonitor
from metrics import (
    PROM_HEARTBEAT_RESUBSCRIBES,
    PROM_STALENESS_SECONDS,
    PROM_TICKS_ACCEPTED,
    PROM_TICKS_REJECTED,
    PROM_UPSTREAM_ERRORS,
    PROM_WINDOW_LENGTH,
    ensure_metrics_server,
)
from publisher import StatsPublisher, create_redis_client, run_redis_healthcheck
from tick_window import Tick, TickOrigin, WindowStore, ticks_from_pairs

log = logging.getLogger("digit_feed")

_LOGGING_CONFIGURED = False
_RICH_CONSOLE: Optional[Console] = None


def setup_logging(level: int = logging.INFO) -> None:
    """Налаштовуємо логування з RichHandler на логері `digit_feed`.

    Модулі пишуть у дочірні логери (`digit_feed.window`, `digit_feed.integrity`...),
    тому одного handler-а на батьківському логері достатньо.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        force_terminal = bool(sys.stderr.isatty()) or os.getenv("DIGIT_FEED_RICH_FORCE_TERMINAL") == "1"
        _RICH_CONSOLE = Console(
            stderr=True,
            force_terminal=force_terminal,
            color_system="standard" if force_terminal else None,
        )

    target_logger = logging.getLogger("digit_feed")
    for handler in target_logger.handlers:
        if isinstance(handler, RichHandler):
            _LOGGING_CONFIGURED = True
            return

    handler = RichHandler(
        console=_RICH_CONSOLE,
        rich_tracebacks=True,
        show_path=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    target_logger.setLevel(level)
    target_logger.addHandler(handler)
    target_logger.propagate = False
    _LOGGING_CONFIGURED = True


class DigitFeedPipeline:
    """Зв'язує фід, вікна, статистику, heartbeat, цілісність та публікацію."""

    def __init__(
        self,
        config: DigitFeedConfig,
        *,
        publisher: Optional[StatsPublisher] = None,
        history_source: Optional[HistorySource] = None,
        connect_factory: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._sleep = sleep
        self.store = WindowStore(config.window.capacity)
        self.registry = ContextRegistry(
            self.store,
            timeframe_seconds=config.candles.timeframe_seconds,
            digit_profiles=config.window.digit_profiles,
        )
        self.publisher = publisher or StatsPublisher(None, config.observability)
        self.history_source: HistorySource = history_source or DerivHistoryClient(
            config.feed.endpoint,
            timeout=config.feed.request_timeout_seconds,
        )
        self.feed = FeedConnection(
            config.feed.endpoint,
            config.reconnect,
            self.handle_message,
            history_count=config.window.capacity,
            candle_granularity=config.candles.timeframe_seconds if config.feed.stream_candles else None,
            on_state_change=self._on_state_change,
            connect_factory=connect_factory,
            sleep=sleep,
        )
        self.heartbeat = HeartbeatMonitor(
            config.heartbeat,
            self._heartbeat_resubscribe,
            on_health_change=self._on_health_change,
            on_silence=self._on_silence,
            clock=clock,
        )
        self.integrity = IntegrityMonitor(
            self.registry,
            self.history_source,
            config.integrity,
            on_resync=self._on_resync,
            on_report=self._on_integrity_report,
        )
        self.total_ticks: Dict[str, int] = {}
        self.upstream_errors: List[ErrorMessage] = []
        self._background: Set[asyncio.Future[Any]] = set()

    # ── Підписки ───────────────────────────────────────────────────────────

    async def subscribe(self, instrument: str) -> InstrumentContext:
        ctx = self.registry.create(instrument)
        self.total_ticks.setdefault(instrument, 0)
        self.heartbeat.register(instrument)
        self.integrity.attach(ctx)
        await self.feed.subscribe(instrument)
        return ctx

    async def unsubscribe(self, instrument: str) -> None:
        ctx = self.registry.find(instrument)
        if ctx is not None:
            self.integrity.detach(ctx)
        self.heartbeat.unregister(instrument)
        self.registry.drop(instrument)
        await self.feed.unsubscribe(instrument)

    async def change_instrument(self, old: str, new: str) -> InstrumentContext:
        """Зміна інструмента: старе вікно звільняється, нове засівається історією."""

        await self.unsubscribe(old)
        return await self.subscribe(new)

    async def manual_resync(self, instrument: str) -> bool:
        return await self.integrity.resync(instrument, manual=True)

    # ── Вхідні повідомлення ────────────────────────────────────────────────

    async def handle_message(self, message: InboundMessage) -> None:
        if isinstance(message, TickMessage):
            self._on_tick(message)
        elif isinstance(message, HistoryMessage):
            self._on_history(message)
        elif isinstance(message, CandlesMessage):
            self._on_candles(message)
        elif isinstance(message, OhlcMessage):
            self._on_ohlc(message)
        elif isinstance(message, ErrorMessage):
            self._on_error(message)
        elif isinstance(message, AckMessage):
            log.debug("Підтвердження %s.", message.msg_type)

    def _on_tick(self, message: TickMessage) -> None:
        ctx = self.registry.find(message.instrument)
        if ctx is None:
            return
        tick = Tick(sequence_key=message.epoch, value=message.quote, origin=TickOrigin.LIVE)
        if not ctx.window.append(tick):
            PROM_TICKS_REJECTED.labels(instrument=ctx.instrument).inc()
            return
        PROM_TICKS_ACCEPTED.labels(instrument=ctx.instrument).inc()
        self.total_ticks[ctx.instrument] = self.total_ticks.get(ctx.instrument, 0) + 1
        if not self.config.feed.stream_candles:
            result = ctx.candles.ingest(tick.sequence_key, tick.value)
            for candle in result.closed:
                log.debug("[%s] Свічка %s закрита: %s", ctx.instrument, ctx.candles.tf_label, candle.to_dict())
        self.heartbeat.mark_tick(ctx.instrument)
        self._recompute(ctx)

    def _on_history(self, message: HistoryMessage) -> None:
        ctx = self.registry.find(message.instrument)
        if ctx is None:
            return
        ticks = ticks_from_pairs(message.pairs(), TickOrigin.HISTORICAL)
        added = ctx.window.merge(ticks)
        self.total_ticks[ctx.instrument] = self.total_ticks.get(ctx.instrument, 0) + added
        log.info(
            "[%s] Історія: %d тиків, нових %d, у вікні %d.",
            ctx.instrument,
            len(ticks),
            added,
            len(ctx.window),
        )
        self._rebuild_candles(ctx)
        if ticks:
            self.heartbeat.mark_tick(ctx.instrument)
        self._recompute(ctx)

    def _rebuild_candles(self, ctx: InstrumentContext) -> None:
        """Локальні свічки перебудовуються з вікна після злиття поза live-потоком."""

        if self.config.feed.stream_candles:
            return
        ctx.candles.reset()
        for tick in ctx.window:
            ctx.candles.ingest(tick.sequence_key, tick.value)

    def _on_candles(self, message: CandlesMessage) -> None:
        ctx = self.registry.find(message.instrument)
        if ctx is None:
            return
        ctx.candles.seed(message.candles)
        self._recompute(ctx)

    def _on_ohlc(self, message: OhlcMessage) -> None:
        ctx = self.registry.find(message.instrument)
        if ctx is None:
            return
        ctx.candles.apply_live_update(
            message.open_time, message.open, message.high, message.low, message.close
        )
        self._recompute(ctx)

    def _on_error(self, message: ErrorMessage) -> None:
        PROM_UPSTREAM_ERRORS.labels(code=message.code).inc()
        self.upstream_errors.append(message)
        log.error(
            "Помилка фіду %s (%s, %s): %s",
            message.code,
            message.request_type or "-",
            message.instrument or "-",
            message.message,
        )
        self.publisher.publish_status(self.status_payload())
        fallback = self.config.feed.fallback_instrument
        if message.invalid_instrument and message.instrument and message.instrument != fallback:
            self._spawn(self._fallback(message.instrument))

    async def _fallback(self, instrument: str) -> None:
        fallback = self.config.feed.fallback_instrument
        await self._sleep(self.config.feed.fallback_delay_seconds)
        log.warning("[%s] Невалідний інструмент, перемикаємось на %s.", instrument, fallback)
        await self.unsubscribe(instrument)
        if fallback not in self.registry:
            await self.subscribe(fallback)

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # ── Статистика та статус ───────────────────────────────────────────────

    def _recompute(self, ctx: InstrumentContext) -> None:
        snapshot = compute_snapshot(
            ctx.instrument,
            ctx.window.values(),
            min_analysis_ticks=self.config.window.min_analysis_ticks,
            digit_position=ctx.digit_position,
            live_candle=ctx.candles.current,
        )
        ctx.snapshot = snapshot
        PROM_WINDOW_LENGTH.labels(instrument=ctx.instrument).set(len(ctx.window))
        self.publisher.publish_snapshot(snapshot.to_payload())

    def status_payload(self) -> Dict[str, Any]:
        instruments: Dict[str, Any] = {}
        for ctx in self.registry:
            health = self.heartbeat.health(ctx.instrument)
            instruments[ctx.instrument] = {
                "health": health.value if health is not None else None,
                "window_length": len(ctx.window),
                "generation": ctx.generation,
                "pass_in_flight": ctx.pass_in_flight,
                "skipped_passes": ctx.skipped_passes,
                "resyncs": ctx.resync_count,
                "last_backfill": ctx.last_backfill.to_dict() if ctx.last_backfill else None,
                "last_comparison": ctx.last_comparison.to_dict() if ctx.last_comparison else None,
            }
        last_error = self.upstream_errors[-1] if self.upstream_errors else None
        return {
            "state": self.feed.state.value,
            "instruments": instruments,
            "last_error": {"code": last_error.code, "message": last_error.message} if last_error else None,
        }

    def _on_state_change(self, state: ConnectionState) -> None:
        self.publisher.publish_status(self.status_payload())

    def _on_health_change(self, instrument: str, health: FeedHealth, silence: float) -> None:
        PROM_STALENESS_SECONDS.labels(instrument=instrument).set(silence)
        self.publisher.publish_status(self.status_payload())

    def _on_silence(self, instrument: str, silence: float) -> None:
        PROM_STALENESS_SECONDS.labels(instrument=instrument).set(silence)

    def _on_integrity_report(self, instrument: str, report: Union[BackfillReport, ComparisonReport]) -> None:
        if isinstance(report, BackfillReport) and report.inserted > 0:
            ctx = self.registry.find(instrument)
            if ctx is not None:
                self._rebuild_candles(ctx)
                self._recompute(ctx)
        self.publisher.publish_status(self.status_payload())

    async def _on_resync(self, instrument: str) -> None:
        ctx = self.registry.find(instrument)
        if ctx is not None:
            # порожній знімок замінює статистику до приходу свіжої історії
            self._recompute(ctx)
        await self.feed.resubscribe(instrument)

    async def _heartbeat_resubscribe(self, instrument: str) -> None:
        PROM_HEARTBEAT_RESUBSCRIBES.labels(instrument=instrument).inc()
        await self.feed.resubscribe(instrument)

    # ── Експорт ────────────────────────────────────────────────────────────

    def export(self, instrument: str, root: Optional[Path] = None) -> Tuple[Path, Path]:
        ctx = self.registry.get(instrument)
        target = root or self.config.export_dir
        ticks = ctx.window.ticks()
        payload = build_export_payload(
            instrument,
            ticks,
            ctx.snapshot,
            timeframe_seconds=self.config.candles.timeframe_seconds,
            total_ticks=self.total_ticks.get(instrument, len(ticks)),
        )
        json_path = write_export(target, payload)
        csv_path = write_tick_log(target, instrument, ticks)
        log.info("[%s] Експортовано %d тиків → %s, %s", instrument, len(ticks), json_path, csv_path)
        return json_path, csv_path

    # ── Життєвий цикл ──────────────────────────────────────────────────────

    async def run(self) -> None:
        for instrument in self.config.feed.instruments:
            await self.subscribe(instrument)
        self.heartbeat.start()
        try:
            await self.feed.run()
        finally:
            self.shutdown()

    async def stop(self) -> None:
        await self.feed.close()

    def shutdown(self) -> None:
        self.heartbeat.stop()
        for ctx in self.registry:
            self.integrity.detach(ctx)
        for task in list(self._background):
            task.cancel()


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Digit-feed: стрім тиків і статистика цифр")
    parser.add_argument(
        "--instruments",
        help="Інструменти через кому (перекриває DIGIT_FEED_INSTRUMENTS)",
    )
    parser.add_argument(
        "--export-on-exit",
        action="store_true",
        help="Зберегти JSON-знімок та tick-log для кожного інструмента при завершенні",
    )
    parser.add_argument("--debug", action="store_true", help="Детальні логи")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    """Запуск конектора.

    Логіка:
    - ENV з `.env` (python-dotenv) та `config/runtime_settings.json`;
    - Prometheus-exporter та Redis-публікація, якщо увімкнені;
    - стрім до `failed` або Ctrl+C, опційний експорт вікон наприкінці.
    """
    args = _parse_args(argv)
    setup_logging(logging.DEBUG if args.debug else logging.INFO)
    load_dotenv()

    try:
        config = load_config()
    except ValueError as exc:
        log.error("%s", exc)
        return

    if args.instruments:
        instruments = [chunk.strip() for chunk in args.instruments.split(",") if chunk.strip()]
        if instruments:
            config = replace(config, feed=replace(config.feed, instruments=instruments))

    if config.observability.metrics_enabled:
        ensure_metrics_server(config.observability.metrics_port)

    redis_client = create_redis_client(config.redis)
    if redis_client is not None and not run_redis_healthcheck(
        redis_client, channel=config.observability.status_channel
    ):
        log.error("Redis health-check не пройдено. Публікацію буде вимкнено на цю сесію.")
        redis_client = None

    pipeline = DigitFeedPipeline(config, publisher=StatsPublisher(redis_client, config.observability))
    log.info("Запуск digit-feed для %s (%s).", ", ".join(config.feed.instruments), config.feed.url)
    try:
        asyncio.run(pipeline.run())
    except FeedFailedError as exc:
        log.error("Фід недоступний: %s. Потрібен ручний перезапуск.", exc)
    except KeyboardInterrupt:
        log.info("Зупинка за Ctrl+C.")
    finally:
        if args.export_on_exit:
            for instrument in pipeline.registry.instruments():
                pipeline.export(instrument)


if __name__ == "__main__":
    main()
