"""Конфігураційні структури та завантаження ENV для digit-feed конектора."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

FEED_DEFAULT_URL = "wss://ws.derivws.com/websockets/v3"
FEED_DEFAULT_APP_ID = "1089"
FEED_DEFAULT_INSTRUMENTS = "R_100"  # Цільові інструменти для стріму (через кому)
FEED_DEFAULT_FALLBACK_INSTRUMENT = "R_10"
WINDOW_DEFAULT_CAPACITY = 1_000  # Розмір вікна тиків на інструмент
ANALYSIS_DEFAULT_MIN_TICKS = 100  # Мінімум тиків до публікації статистики
CANDLE_DEFAULT_TIMEFRAME_SECONDS = 120
METRICS_DEFAULT_PORT = 9210
STATS_DEFAULT_CHANNEL = "digit_feed:stats"
STATUS_DEFAULT_CHANNEL = "digit_feed:status"
EXPORT_DEFAULT_DIR = "exports"
DIGIT_PROFILE_LAST = "last"
RUNTIME_SETTINGS_FILE = Path("config/runtime_settings.json")


def _load_json_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:  # pragma: no cover - конфіг краще падати одразу
        raise ValueError(f"Некоректний JSON у {path}: {exc}") from exc


def _get_int_env(name: str, default: int, *, min_value: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_value, value)


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _coerce_int(value: Any, default: int, *, min_value: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, parsed)


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _coerce_float(value: Any, default: float, *, min_value: float = 0.1) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, parsed)


def _parse_instruments(raw: Any) -> List[str]:
    """Приймає рядок `R_10,R_100` або список і повертає унікальні інструменти."""

    chunks: List[str] = []
    if isinstance(raw, str):
        chunks = raw.split(",")
    elif isinstance(raw, Sequence):
        for entry in raw:
            if isinstance(entry, str):
                chunks.extend(entry.split(","))
            elif isinstance(entry, Mapping):
                chunks.append(str(entry.get("instrument") or entry.get("symbol") or ""))
    instruments: List[str] = []
    for chunk in chunks:
        text = chunk.strip()
        if text and text not in instruments:
            instruments.append(text)
    return instruments


def parse_digit_profile(raw: Any) -> Optional[int]:
    """Повертає позицію відстежуваної цифри (1-based) або None для профілю `last`.

    Підтримувані значення: `last`, `fixed:N`, просто число `N`.
    """

    if raw is None:
        return None
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw >= 1 else None
    text = str(raw).strip().lower()
    if not text or text == DIGIT_PROFILE_LAST:
        return None
    if text.startswith("fixed:"):
        text = text.split(":", 1)[1].strip()
    try:
        position = int(text)
    except ValueError:
        return None
    return position if position >= 1 else None


def _parse_digit_profiles(value: Any) -> Dict[str, Optional[int]]:
    if not isinstance(value, Mapping):
        return {}
    profiles: Dict[str, Optional[int]] = {}
    for instrument, raw_profile in value.items():
        name = str(instrument).strip()
        if name:
            profiles[name] = parse_digit_profile(raw_profile)
    return profiles


@dataclass(frozen=True)
class ReconnectPolicy:
    """Лінійний backoff `min(base * r, cap)` з лімітом спроб."""

    base_delay: float
    max_delay: float
    max_retries: int


@dataclass(frozen=True)
class FeedSettings:
    url: str
    app_id: str
    instruments: List[str]
    fallback_instrument: str
    fallback_delay_seconds: float
    request_timeout_seconds: float
    stream_candles: bool

    @property
    def endpoint(self) -> str:
        if not self.app_id or "app_id=" in self.url:
            return self.url
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}app_id={self.app_id}"


@dataclass(frozen=True)
class WindowSettings:
    capacity: int
    min_analysis_ticks: int
    digit_profiles: Dict[str, Optional[int]] = field(default_factory=dict)


@dataclass(frozen=True)
class HeartbeatSettings:
    check_interval_seconds: float
    warn_after_seconds: float
    resubscribe_after_seconds: float


@dataclass(frozen=True)
class IntegritySettings:
    gap_check_interval_seconds: float
    compare_interval_seconds: float
    resync_interval_seconds: float
    compare_count: int
    expected_step: int
    value_tolerance: float


@dataclass(frozen=True)
class CandleSettings:
    timeframe_seconds: int


@dataclass(frozen=True)
class RedisSettings:
    enabled: bool
    host: str
    port: int


@dataclass(frozen=True)
class ObservabilitySettings:
    metrics_enabled: bool
    metrics_port: int
    stats_channel: str
    status_channel: str


@dataclass(frozen=True)
class DigitFeedConfig:
    feed: FeedSettings
    reconnect: ReconnectPolicy
    window: WindowSettings
    heartbeat: HeartbeatSettings
    integrity: IntegritySettings
    candles: CandleSettings
    redis: RedisSettings
    observability: ObservabilitySettings
    export_dir: Path


def _load_runtime_settings() -> Dict[str, Any]:
    return _load_json_file(RUNTIME_SETTINGS_FILE)


def _section(payload: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    raw = payload.get(name)
    return raw if isinstance(raw, Mapping) else {}


def load_config() -> DigitFeedConfig:
    """Зчитує налаштування з ENV та runtime_settings.json, повертає агреговану конфігурацію."""

    runtime_settings = _load_runtime_settings()

    feed_cfg = _section(runtime_settings, "feed")
    instruments = _parse_instruments(
        os.environ.get("DIGIT_FEED_INSTRUMENTS") or feed_cfg.get("instruments") or FEED_DEFAULT_INSTRUMENTS
    )
    if not instruments:
        raise ValueError("Потрібно задати хоча б один інструмент (DIGIT_FEED_INSTRUMENTS).")
    fallback_instrument = (
        str(feed_cfg.get("fallback_instrument") or FEED_DEFAULT_FALLBACK_INSTRUMENT).strip()
        or FEED_DEFAULT_FALLBACK_INSTRUMENT
    )
    feed_settings = FeedSettings(
        url=os.environ.get("DIGIT_FEED_URL", "").strip() or str(feed_cfg.get("url") or FEED_DEFAULT_URL),
        app_id=os.environ.get("DIGIT_FEED_APP_ID", "").strip() or str(feed_cfg.get("app_id") or FEED_DEFAULT_APP_ID),
        instruments=instruments,
        fallback_instrument=fallback_instrument,
        fallback_delay_seconds=_coerce_float(feed_cfg.get("fallback_delay_seconds"), 1.0, min_value=0.0),
        request_timeout_seconds=_coerce_float(feed_cfg.get("request_timeout_seconds"), 10.0, min_value=1.0),
        stream_candles=_coerce_bool(feed_cfg.get("stream_candles"), False),
    )

    reconnect_cfg = _section(runtime_settings, "reconnect")
    base_delay = _coerce_float(reconnect_cfg.get("base_delay"), 3.0, min_value=0.1)
    reconnect_policy = ReconnectPolicy(
        base_delay=base_delay,
        max_delay=_coerce_float(reconnect_cfg.get("max_delay"), 15.0, min_value=base_delay),
        max_retries=_coerce_int(reconnect_cfg.get("max_retries"), 5, min_value=0),
    )

    window_cfg = _section(runtime_settings, "window")
    capacity = _coerce_int(window_cfg.get("capacity"), WINDOW_DEFAULT_CAPACITY, min_value=10)
    window_settings = WindowSettings(
        capacity=capacity,
        min_analysis_ticks=min(
            capacity,
            _coerce_int(window_cfg.get("min_analysis_ticks"), ANALYSIS_DEFAULT_MIN_TICKS, min_value=1),
        ),
        digit_profiles=_parse_digit_profiles(window_cfg.get("digit_profiles")),
    )

    heartbeat_cfg = _section(runtime_settings, "heartbeat")
    warn_after = _coerce_float(heartbeat_cfg.get("warn_after_seconds"), 10.0, min_value=1.0)
    heartbeat_settings = HeartbeatSettings(
        check_interval_seconds=_coerce_float(heartbeat_cfg.get("check_interval_seconds"), 5.0, min_value=0.5),
        warn_after_seconds=warn_after,
        resubscribe_after_seconds=_coerce_float(
            heartbeat_cfg.get("resubscribe_after_seconds"), 30.0, min_value=warn_after
        ),
    )

    integrity_cfg = _section(runtime_settings, "integrity")
    integrity_settings = IntegritySettings(
        gap_check_interval_seconds=_coerce_float(integrity_cfg.get("gap_check_interval_seconds"), 120.0, min_value=1.0),
        compare_interval_seconds=_coerce_float(integrity_cfg.get("compare_interval_seconds"), 120.0, min_value=1.0),
        resync_interval_seconds=_coerce_float(integrity_cfg.get("resync_interval_seconds"), 300.0, min_value=1.0),
        compare_count=min(100, _coerce_int(integrity_cfg.get("compare_count"), 100, min_value=1)),
        expected_step=_coerce_int(integrity_cfg.get("expected_step"), 1, min_value=1),
        value_tolerance=_coerce_float(integrity_cfg.get("value_tolerance"), 1e-8, min_value=0.0),
    )

    candle_cfg = _section(runtime_settings, "candles")
    candle_settings = CandleSettings(
        timeframe_seconds=_coerce_int(
            candle_cfg.get("timeframe_seconds"), CANDLE_DEFAULT_TIMEFRAME_SECONDS, min_value=1
        ),
    )

    redis_settings = RedisSettings(
        enabled=_get_bool_env("DIGIT_FEED_REDIS_ENABLED", False),
        host=os.environ.get("DIGIT_FEED_REDIS_HOST", "127.0.0.1").strip() or "127.0.0.1",
        port=_get_int_env("DIGIT_FEED_REDIS_PORT", 6379, min_value=1),
    )

    observability_cfg = _section(runtime_settings, "observability")
    observability = ObservabilitySettings(
        metrics_enabled=_get_bool_env("DIGIT_FEED_METRICS_ENABLED", False),
        metrics_port=_get_int_env("DIGIT_FEED_METRICS_PORT", METRICS_DEFAULT_PORT, min_value=1024),
        stats_channel=str(observability_cfg.get("stats_channel") or STATS_DEFAULT_CHANNEL).strip(),
        status_channel=str(observability_cfg.get("status_channel") or STATUS_DEFAULT_CHANNEL).strip(),
    )

    export_dir = Path(
        os.environ.get("DIGIT_FEED_EXPORT_DIR", "").strip()
        or str(runtime_settings.get("export_dir") or EXPORT_DEFAULT_DIR)
    )

    return DigitFeedConfig(
        feed=feed_settings,
        reconnect=reconnect_policy,
        window=window_settings,
        heartbeat=heartbeat_settings,
        integrity=integrity_settings,
        candles=candle_settings,
        redis=redis_settings,
        observability=observability,
        export_dir=export_dir,
    )
