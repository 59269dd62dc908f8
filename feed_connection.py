"""Менеджер з'єднання зі стрімінговим фідом.

Відповідає за життєвий цикл WebSocket: відкриття, підписки з історією,
диспетчеризацію декодованих повідомлень, відписку через `forget` та
перепідключення з лінійним backoff `min(base * r, cap)`. Після вичерпання
спроб з'єднання переходить у термінальний стан `failed` і не відновлюється
самостійно, лише через явний `restart()`.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import websockets
import websockets.exceptions

from config import ReconnectPolicy
from feed_schema import (
    InboundMessage,
    ProtocolError,
    build_candles_request,
    build_forget_request,
    build_subscribe_request,
    decode_message,
    encode_request,
)
from metrics import PROM_FEED_STATE, PROM_PROTOCOL_ERRORS, PROM_RECONNECTS

log = logging.getLogger("digit_feed.connection")

CANDLE_HISTORY_COUNT = 100


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    FAILED = "failed"
    CLOSED = "closed"


class TransportError(ConnectionError):
    """Обрив або відмова транспорту; обробляється перепідключенням."""


class FeedFailedError(RuntimeError):
    """Ліміт перепідключень вичерпано, з'єднання у стані `failed`."""


class ReconnectController:
    """Рахує послідовні невдачі та видає затримку перед наступною спробою."""

    def __init__(self, policy: ReconnectPolicy) -> None:
        self._policy = policy
        self.retries = 0

    def next_delay(self) -> Optional[float]:
        """Затримка для чергової невдачі або None, якщо ліміт вичерпано.

        >>> ctrl = ReconnectController(ReconnectPolicy(3.0, 15.0, 5))
        >>> [ctrl.next_delay() for _ in range(6)]
        [3.0, 6.0, 9.0, 12.0, 15.0, None]
        """

        self.retries += 1
        if self.retries > self._policy.max_retries:
            return None
        return min(self._policy.base_delay * self.retries, self._policy.max_delay)

    def reset(self) -> None:
        self.retries = 0


MessageHandler = Callable[[InboundMessage], Union[None, Awaitable[Any]]]
StateListener = Callable[[ConnectionState], None]

_TRANSPORT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    websockets.exceptions.WebSocketException,
    TransportError,
)


class FeedConnection:
    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy,
        on_message: MessageHandler,
        *,
        history_count: int,
        candle_granularity: Optional[int] = None,
        on_state_change: Optional[StateListener] = None,
        connect_factory: Callable[..., Any] = websockets.connect,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._url = url
        self._reconnect = ReconnectController(policy)
        self._on_message = on_message
        self._on_state_change = on_state_change
        self._history_count = int(history_count)
        self._candle_granularity = candle_granularity
        self._connect = connect_factory
        self._sleep = sleep
        self._ws: Any = None
        self._state = ConnectionState.CLOSED
        self._stopping = False
        self._desired: List[str] = []
        self._subscriptions: Dict[str, Set[str]] = {}
        self.protocol_errors = 0
        self.reconnects = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def instruments(self) -> List[str]:
        return list(self._desired)

    def subscription_ids(self, instrument: str) -> Set[str]:
        return set(self._subscriptions.get(instrument, ()))

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        for candidate in ConnectionState:
            PROM_FEED_STATE.labels(state=candidate.value).set(1 if candidate is state else 0)
        log.info("Фід: %s -> %s", previous.value, state.value)
        if self._on_state_change is not None:
            self._on_state_change(state)

    # ── Підписки ───────────────────────────────────────────────────────────

    async def _send(self, payload: Dict[str, Any]) -> bool:
        ws = self._ws
        if ws is None or self._state is not ConnectionState.OPEN:
            return False
        try:
            await ws.send(encode_request(payload))
        except websockets.exceptions.ConnectionClosed as exc:
            log.warning("Не вдалося надіслати запит (з'єднання закрите): %s", exc)
            return False
        return True

    async def _send_subscription(self, instrument: str) -> None:
        await self._send(dict(build_subscribe_request(instrument, self._history_count)))
        if self._candle_granularity:
            await self._send(
                dict(build_candles_request(instrument, self._candle_granularity, CANDLE_HISTORY_COUNT))
            )

    async def _forget(self, instrument: str) -> None:
        for sub_id in sorted(self._subscriptions.pop(instrument, set())):
            await self._send(dict(build_forget_request(sub_id)))

    async def subscribe(self, instrument: str) -> None:
        if instrument not in self._desired:
            self._desired.append(instrument)
        log.info("[%s] Підписка на тики з історією (%d).", instrument, self._history_count)
        await self._send_subscription(instrument)

    async def unsubscribe(self, instrument: str) -> None:
        if instrument in self._desired:
            self._desired.remove(instrument)
        await self._forget(instrument)
        log.info("[%s] Відписка виконана.", instrument)

    async def resubscribe(self, instrument: str) -> None:
        """Перевідкриває підписку на існуючому з'єднанні (forget + history+subscribe)."""

        if instrument not in self._desired:
            return
        await self._forget(instrument)
        await self._send_subscription(instrument)

    # ── Життєвий цикл ──────────────────────────────────────────────────────

    async def connect(self) -> None:
        self._set_state(
            ConnectionState.CONNECTING if self._reconnect.retries == 0 else ConnectionState.RECONNECTING
        )
        self._ws = await self._connect(self._url, close_timeout=5)
        self._subscriptions.clear()
        self._reconnect.reset()
        self._set_state(ConnectionState.OPEN)
        for instrument in list(self._desired):
            await self._send_subscription(instrument)

    async def run(self) -> None:
        """Цикл читання з перепідключенням; повертається після `close()`."""

        self._stopping = False
        while not self._stopping:
            try:
                await self.connect()
                await self._read_loop()
                if self._stopping:
                    break
                raise TransportError("Сервер закрив з'єднання.")
            except asyncio.CancelledError:
                await self._drop_socket()
                raise
            except _TRANSPORT_ERRORS as exc:
                await self._drop_socket()
                if self._stopping:
                    break
                delay = self._reconnect.next_delay()
                if delay is None:
                    self._set_state(ConnectionState.FAILED)
                    log.error(
                        "Фід: вичерпано %d спроб перепідключення, стан failed.",
                        self._reconnect.retries - 1,
                    )
                    raise FeedFailedError("Ліміт перепідключень вичерпано") from exc
                self.reconnects += 1
                PROM_RECONNECTS.inc()
                self._set_state(ConnectionState.RECONNECTING)
                log.warning(
                    "Фід недоступний (%s), спроба %d через %.1f с.", exc, self._reconnect.retries, delay
                )
                await self._sleep(delay)
        self._set_state(ConnectionState.CLOSED)

    async def restart(self) -> None:
        """Явний перезапуск після `failed`: скидає лічильник спроб і знову входить у `run()`."""

        log.info("Фід: ручний перезапуск зі стану %s.", self._state.value)
        self._reconnect.reset()
        await self.run()

    async def close(self) -> None:
        self._stopping = True
        await self._drop_socket()
        self._set_state(ConnectionState.CLOSED)

    async def _drop_socket(self) -> None:
        ws = self._ws
        self._ws = None
        if ws is None:
            return
        try:
            await ws.close()
        except websockets.exceptions.WebSocketException as exc:
            log.debug("Помилка закриття WebSocket: %s", exc)

    async def _read_loop(self) -> None:
        ws = self._ws
        async for raw in ws:
            if self._stopping:
                break
            try:
                message = decode_message(raw)
            except ProtocolError as exc:
                self.protocol_errors += 1
                PROM_PROTOCOL_ERRORS.inc()
                log.warning("Відкинуто некоректне повідомлення фіду: %s", exc)
                continue
            if not await self._track_subscription(message):
                continue
            result = self._on_message(message)
            if inspect.isawaitable(result):
                await result

    async def _track_subscription(self, message: InboundMessage) -> bool:
        """Записує id підписки; повідомлення для неактивних інструментів відкидаються."""

        instrument = getattr(message, "instrument", None)
        sub_id = getattr(message, "subscription_id", None)
        if instrument is None or sub_id is None:
            return True
        if instrument not in self._desired:
            log.debug("[%s] Запізніле повідомлення після відписки, forget %s.", instrument, sub_id)
            await self._send(dict(build_forget_request(sub_id)))
            return False
        self._subscriptions.setdefault(instrument, set()).add(sub_id)
        return True
