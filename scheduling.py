"""Скасовувані періодичні задачі поверх asyncio."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

log = logging.getLogger("digit_feed.scheduling")

PeriodicCallback = Callable[[], Union[None, Awaitable[Any]]]


class PeriodicTask:
    """Викликає `callback` кожні `interval` секунд до `cancel()`.

    Виняток у callback логується і не зупиняє таймер. Перший виклик відбувається
    через `interval` після `start()`, а не одразу.
    """

    def __init__(self, name: str, interval: float, callback: PeriodicCallback) -> None:
        if interval <= 0:
            raise ValueError("interval має бути > 0")
        self.name = name
        self.interval = float(interval)
        self._callback = callback
        self._task: Optional[asyncio.Task[None]] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.ensure_future(self._loop())

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done():
            task.cancel()

    async def wait_cancelled(self) -> None:
        task = self._task
        self.cancel()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    async def run_once(self) -> None:
        self.runs += 1
        try:
            result = self._callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            self.failures += 1
            log.exception("Періодична задача %s завершилась з помилкою.", self.name)
