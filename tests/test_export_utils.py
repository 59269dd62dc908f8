from __future__ import annotations

import datetime as dt
import json
import tempfile
from pathlib import Path

import pandas as pd

from digit_stats import compute_snapshot
from export_utils import TICK_LOG_COLUMNS, build_export_payload, ticks_to_frame, write_export, write_tick_log
from tick_window import Tick, TickOrigin


def sample_ticks():
    return [
        Tick(1, 100.01, TickOrigin.HISTORICAL, 10.0),
        Tick(2, 100.02, TickOrigin.BACKFILL, 11.0),
        Tick(3, 100.03, TickOrigin.LIVE, 12.0),
    ]


class TestExport:
    def test_frame_columns_and_sources(self) -> None:
        frame = ticks_to_frame(sample_ticks())
        assert list(frame.columns) == TICK_LOG_COLUMNS
        assert frame["source"].tolist() == ["historical", "backfill", "live"]

    def test_empty_frame_keeps_schema(self) -> None:
        frame = ticks_to_frame([])
        assert isinstance(frame, pd.DataFrame)
        assert list(frame.columns) == TICK_LOG_COLUMNS
        assert frame.empty

    def test_payload_shape(self) -> None:
        ticks = sample_ticks()
        snapshot = compute_snapshot("R_100", [t.value for t in ticks], min_analysis_ticks=100)
        stamp = dt.datetime(2024, 5, 1, 12, 0, tzinfo=dt.timezone.utc)

        payload = build_export_payload(
            "R_100", ticks, snapshot, timeframe_seconds=120, total_ticks=42, exported_at=stamp
        )

        assert payload["metadata"] == {
            "exportTime": "2024-05-01T12:00:00+00:00",
            "market": "R_100",
            "timeframe": 120,
            "totalTicks": 42,
            "analysisWindow": 3,
        }
        assert payload["rawWindow"][0]["epoch"] == 1
        assert payload["statisticsSnapshot"]["digit_counts"][1] == 1

    def test_write_files(self) -> None:
        ticks = sample_ticks()
        payload = build_export_payload("R_100", ticks, None, timeframe_seconds=120, total_ticks=3)
        with tempfile.TemporaryDirectory() as tmp:
            root = Path(tmp) / "nested"
            json_path = write_export(root, payload)
            csv_path = write_tick_log(root, "R_100", ticks)

            assert json.loads(json_path.read_text(encoding="utf-8"))["statisticsSnapshot"] is None
            frame = pd.read_csv(csv_path)
            assert frame["epoch"].tolist() == [1, 2, 3]
