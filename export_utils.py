"""Експорт вікна тиків: JSON-знімок аналізу та tick-log у CSV."""

from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, cast

import pandas as pd

from digit_stats import StatisticsSnapshot
from tick_window import Tick

TICK_LOG_COLUMNS = ["epoch", "quote", "source", "local_time"]


def ticks_to_frame(ticks: Iterable[Tick]) -> pd.DataFrame:
    rows = [tick.to_dict() for tick in ticks]
    if not rows:
        return pd.DataFrame(columns=TICK_LOG_COLUMNS)
    df = pd.DataFrame(rows)
    return cast(pd.DataFrame, df[TICK_LOG_COLUMNS].copy())


def build_export_payload(
    instrument: str,
    ticks: Iterable[Tick],
    snapshot: Optional[StatisticsSnapshot],
    *,
    timeframe_seconds: int,
    total_ticks: int,
    exported_at: Optional[dt.datetime] = None,
) -> Dict[str, Any]:
    """Формує `{metadata, rawWindow, statisticsSnapshot}` для зовнішнього збереження."""

    frame = ticks_to_frame(ticks)
    stamp = exported_at or dt.datetime.now(dt.timezone.utc)
    return {
        "metadata": {
            "exportTime": stamp.isoformat(),
            "market": instrument,
            "timeframe": timeframe_seconds,
            "totalTicks": total_ticks,
            "analysisWindow": int(len(frame)),
        },
        "rawWindow": frame.to_dict(orient="records"),
        "statisticsSnapshot": snapshot.to_payload() if snapshot is not None else None,
    }


def _export_stem(instrument: str, stamp: dt.datetime) -> str:
    return f"{instrument}-{stamp.strftime('%Y-%m-%dT%H-%M-%S')}"


def write_export(root: Path, payload: Dict[str, Any]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    stamp = dt.datetime.fromisoformat(payload["metadata"]["exportTime"])
    path = root / f"digit-analysis-{_export_stem(payload['metadata']['market'], stamp)}.json"
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, ensure_ascii=False, indent=2)
    return path


def write_tick_log(root: Path, instrument: str, ticks: Iterable[Tick]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / f"tick_log-{instrument}.csv"
    ticks_to_frame(ticks).to_csv(path, index=False)
    return path
