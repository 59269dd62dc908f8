"""Prometheus-метрики digit-feed конектора."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, start_http_server

log = logging.getLogger("digit_feed.metrics")

_METRICS_SERVER_STARTED = False

PROM_TICKS_ACCEPTED = Counter(
    "digit_feed_ticks_accepted_total",
    "Кількість live-тиків, доданих у вікно",
    ["instrument"],
)
PROM_TICKS_REJECTED = Counter(
    "digit_feed_ticks_rejected_total",
    "Кількість тиків, відкинутих через неспадний ключ (дубль/застарілий)",
    ["instrument"],
)
PROM_WINDOW_LENGTH = Gauge(
    "digit_feed_window_length",
    "Поточна довжина вікна тиків",
    ["instrument"],
)
PROM_GAPS_DETECTED = Counter(
    "digit_feed_gaps_detected_total",
    "Кількість виявлених розривів у послідовності ключів",
    ["instrument"],
)
PROM_BACKFILL_PASSES = Counter(
    "digit_feed_backfill_passes_total",
    "Проходи backfill за підсумковим статусом",
    ["instrument", "status"],
)
PROM_BACKFILL_TICKS = Counter(
    "digit_feed_backfill_ticks_total",
    "Кількість тиків, вставлених через backfill",
    ["instrument"],
)
PROM_COMPARISON_MISMATCHES = Counter(
    "digit_feed_comparison_mismatches_total",
    "Розбіжності між локальним вікном та незалежним джерелом",
    ["instrument"],
)
PROM_COMPARISON_FAILURES = Counter(
    "digit_feed_comparison_failures_total",
    "Невдалі запити звірки",
    ["instrument"],
)
PROM_SKIPPED_PASSES = Counter(
    "digit_feed_skipped_passes_total",
    "Планові проходи, пропущені через інший прохід у польоті",
    ["instrument", "pass_name"],
)
PROM_VOIDED_PASSES = Counter(
    "digit_feed_voided_passes_total",
    "Результати проходів, відкинуті через зміну покоління контексту",
    ["instrument", "pass_name"],
)
PROM_RESYNCS = Counter(
    "digit_feed_resyncs_total",
    "Повні ресинхронізації вікна",
    ["instrument", "trigger"],
)
PROM_RECONNECTS = Counter(
    "digit_feed_reconnects_total",
    "Спроби перепідключення до фіду",
)
PROM_PROTOCOL_ERRORS = Counter(
    "digit_feed_protocol_errors_total",
    "Повідомлення фіду, відкинуті через порушення контракту",
)
PROM_UPSTREAM_ERRORS = Counter(
    "digit_feed_upstream_errors_total",
    "Помилки, повернуті сервером фіду",
    ["code"],
)
PROM_FEED_STATE = Gauge(
    "digit_feed_connection_state",
    "Стан з'єднання: 1 для активного стану, 0 для решти",
    ["state"],
)
PROM_STALENESS_SECONDS = Gauge(
    "digit_feed_staleness_seconds",
    "Секунди без прийнятого тику на момент останньої перевірки heartbeat",
    ["instrument"],
)
PROM_HEARTBEAT_RESUBSCRIBES = Counter(
    "digit_feed_heartbeat_resubscribes_total",
    "Переспідписки, ініційовані heartbeat",
    ["instrument"],
)
PROM_PUBLISH_ERRORS = Counter(
    "digit_feed_publish_errors_total",
    "Невдалі публікації у Redis",
    ["channel"],
)


def ensure_metrics_server(port: int) -> None:
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    start_http_server(port)
    log.info("Prometheus-метрики доступні на порту %s.", port)
    _METRICS_SERVER_STARTED = True
