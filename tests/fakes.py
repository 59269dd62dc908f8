"""Фейкові WebSocket-з'єднання для тестів фіду та джерела історії."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Iterable, List, Optional


class FakeSocket:
    """Імітує клієнтське з'єднання: `send`, `close` та асинхронну ітерацію."""

    def __init__(self, messages: Iterable[Any] = (), *, finish: bool = False) -> None:
        self._incoming: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        for message in messages:
            self.push(message)
        if finish:
            self.finish()

    def push(self, message: Any) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def finish(self) -> None:
        self._incoming.put_nowait(None)

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.finish()

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    """Фабрика з'єднань: видає підготовлені сокети або кидає помилки по черзі."""

    def __init__(self, outcomes: Iterable[Any], *, default: Any = None) -> None:
        self._outcomes = list(outcomes)
        self._default = default
        self.calls: List[str] = []

    async def __call__(self, url: str, **kwargs: Any) -> Any:
        self.calls.append(url)
        outcome = self._outcomes.pop(0) if self._outcomes else self._default
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise OSError("connection refused")
        return outcome


class FakeHistoryConnection:
    """Одноразове з'єднання для `DerivHistoryClient` (async context manager)."""

    def __init__(self, replies: Iterable[Dict[str, Any]]) -> None:
        self._replies = list(replies)
        self.sent: List[Dict[str, Any]] = []

    async def __aenter__(self) -> "FakeHistoryConnection":
        return self

    async def __aexit__(self, *exc_info: Any) -> bool:
        return False

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for reply in self._replies:
            yield json.dumps(reply)


def record_sleep(delays: List[float]):
    async def _sleep(delay: float) -> None:
        delays.append(delay)

    return _sleep
