"""Публікація знімків статистики та статусу фіду у Redis pub/sub."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, Mapping, Optional

import redis

from config import ObservabilitySettings, RedisSettings
from metrics import PROM_PUBLISH_ERRORS

log = logging.getLogger("digit_feed.publisher")


def create_redis_client(settings: RedisSettings) -> Optional[Any]:
    """Створює Redis-клієнт або повертає None, якщо публікацію вимкнено чи Redis недоступний."""

    if not settings.enabled:
        log.debug("Публікацію в Redis вимкнено конфігурацією.")
        return None
    try:
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            decode_responses=True,
        )
        client.ping()
        log.info(
            "Redis-клієнт версія: %s, %s:%s.",
            redis.__version__,
            settings.host,
            settings.port,
        )
        return client
    except redis.RedisError as exc:
        log.exception("Не вдалося підключитись до Redis: %s", exc)
        return None


def run_redis_healthcheck(redis_client: Optional[Any], *, channel: str) -> bool:
    """Перевіряє доступність Redis і здатність приймати повідомлення."""

    if redis_client is None:
        log.error("Redis-клієнт відсутній — health-check провалено.")
        return False

    ping_ok = False
    publish_ok = False
    try:
        redis_client.ping()
        ping_ok = True
    except redis.RedisError as exc:
        log.exception("Redis health-check: ping неуспішний: %s", exc)

    probe_payload = json.dumps(
        {"type": "healthcheck", "ts": int(time.time() * 1000)},
        separators=(",", ":"),
    )
    try:
        redis_client.publish(channel, probe_payload)
        publish_ok = True
    except redis.RedisError as exc:
        log.exception("Redis health-check: publish неуспішний: %s", exc)

    if ping_ok and publish_ok:
        log.debug("Redis health-check: OK (ping + publish).")
    else:
        log.error("Redis health-check: FAILED (ping=%s, publish=%s).", ping_ok, publish_ok)
    return ping_ok and publish_ok


class StatsPublisher:
    """Надсилає знімки та статус; помилки публікації ніколи не зупиняють інжест."""

    def __init__(self, redis_client: Optional[Any], settings: ObservabilitySettings) -> None:
        self._client = redis_client
        self._stats_channel = settings.stats_channel
        self._status_channel = settings.status_channel
        self.published = 0
        self.failures = 0

    @property
    def enabled(self) -> bool:
        return self._client is not None

    def publish_snapshot(self, payload: Mapping[str, Any]) -> bool:
        message = {"type": "stats", "ts": int(time.time() * 1000), "data": dict(payload)}
        return self._publish(self._stats_channel, message)

    def publish_status(self, payload: Mapping[str, Any]) -> bool:
        message = {"type": "status", "ts": int(time.time() * 1000), "data": dict(payload)}
        return self._publish(self._status_channel, message)

    def _publish(self, channel: str, message: Dict[str, Any]) -> bool:
        if self._client is None:
            return False
        try:
            self._client.publish(channel, json.dumps(message, separators=(",", ":"), default=str))
        except redis.RedisError as exc:
            self.failures += 1
            PROM_PUBLISH_ERRORS.labels(channel=channel).inc()
            log.warning("Не вдалося опублікувати у %s: %s", channel, exc)
            return False
        self.published += 1
        return True
