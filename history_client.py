"""Незалежне джерело історії тиків для backfill та звірки.

Кожен запит відкриває окреме одноразове WebSocket-з'єднання, надсилає
`ticks_history` без підписки та чекає на відповідь з `history` або `error`.
Так звірка не залежить від стану основного стріму.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, List, Tuple

import websockets
import websockets.exceptions

from feed_schema import (
    ProtocolError,
    build_history_range_request,
    build_latest_request,
    encode_request,
    history_pairs_from_response,
)

log = logging.getLogger("digit_feed.history")

HistoryPairs = List[Tuple[int, float]]


class HistoryFetchError(RuntimeError):
    """Транспортна помилка або таймаут запиту історії."""


class DerivHistoryClient:
    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        connect_factory: Callable[..., Any] = websockets.connect,
    ) -> None:
        self._url = url
        self._timeout = float(timeout)
        self._connect = connect_factory
        self.requests_sent = 0

    async def fetch_range(self, instrument: str, start_key: int, end_key: int, count: int) -> HistoryPairs:
        """Тики з інтервалу `[start_key, end_key]` включно (best-effort)."""

        request = build_history_range_request(instrument, start_key, end_key, count)
        return await self._request(dict(request))

    async def fetch_latest(self, instrument: str, count: int) -> HistoryPairs:
        return await self._request(dict(build_latest_request(instrument, count)))

    async def _request(self, request: dict) -> HistoryPairs:
        self.requests_sent += 1
        try:
            return await asyncio.wait_for(self._roundtrip(request), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise HistoryFetchError(
                f"Таймаут {self._timeout:.1f} с для ticks_history {request.get('ticks_history')}"
            ) from exc
        except (OSError, websockets.exceptions.WebSocketException) as exc:
            raise HistoryFetchError(f"Помилка з'єднання історії: {exc}") from exc

    async def _roundtrip(self, request: dict) -> HistoryPairs:
        async with self._connect(self._url, close_timeout=5) as ws:
            await ws.send(encode_request(request))
            async for raw in ws:
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError as exc:
                    raise ProtocolError("Некоректний JSON у відповіді історії") from exc
                if not isinstance(payload, dict):
                    continue
                if "error" in payload or "history" in payload:
                    pairs = history_pairs_from_response(payload)
                    log.debug(
                        "Історія %s: отримано %d тиків.", request.get("ticks_history"), len(pairs)
                    )
                    return pairs
        raise HistoryFetchError("З'єднання історії закрито без відповіді.")
