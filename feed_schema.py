"""Контракти повідомлень стрімінгового фіду (Deriv-подібний WebSocket API).

Модуль описує:
- вихідні запити (history+subscribe, forget, candles, запит історії за діапазоном);
- закрите об'єднання вхідних повідомлень (`InboundMessage`) та `decode_message`,
  що розбирає сирий JSON за дискримінантом `msg_type`.

Будь-яке повідомлення з невідомим дискримінантом або зламаною структурою
перетворюється на `ProtocolError`: викликач його логує та відкидає, стан не змінюється.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional, Tuple, Union

from typing_extensions import TypedDict

INVALID_SYMBOL_CODE = "InvalidSymbol"
ACK_MESSAGE_TYPES = frozenset({"forget", "forget_all", "ping"})


class ProtocolError(ValueError):
    """Повідомлення не відповідає контракту фіду (відкидається без мутацій)."""


class UpstreamDataError(RuntimeError):
    """Сервер повернув помилку (наприклад, невалідний інструмент)."""

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message


class TicksHistoryRequest(TypedDict, total=False):
    ticks_history: str
    count: int
    end: str
    start: int
    style: str
    subscribe: int
    granularity: int


class ForgetRequest(TypedDict):
    forget: str


class CandlePayload(TypedDict):
    epoch: int
    open: float
    high: float
    low: float
    close: float


# ── Вихідні запити ─────────────────────────────────────────────────────────


def build_subscribe_request(instrument: str, count: int) -> TicksHistoryRequest:
    """Історія `count` останніх тиків + live-підписка одним запитом."""

    return TicksHistoryRequest(
        ticks_history=instrument,
        count=int(count),
        end="latest",
        style="ticks",
        subscribe=1,
    )


def build_candles_request(instrument: str, granularity: int, count: int) -> TicksHistoryRequest:
    return TicksHistoryRequest(
        ticks_history=instrument,
        count=int(count),
        end="latest",
        style="candles",
        granularity=int(granularity),
        subscribe=1,
    )


def build_history_range_request(
    instrument: str, start_key: int, end_key: int, count: int
) -> TicksHistoryRequest:
    """Разовий запит історії для інтервалу `[start_key, end_key]` без підписки."""

    return TicksHistoryRequest(
        ticks_history=instrument,
        start=int(start_key),
        end=str(int(end_key)),
        count=max(1, int(count)),
        style="ticks",
    )


def build_latest_request(instrument: str, count: int) -> TicksHistoryRequest:
    return TicksHistoryRequest(
        ticks_history=instrument,
        count=max(1, int(count)),
        end="latest",
        style="ticks",
    )


def build_forget_request(subscription_id: str) -> ForgetRequest:
    return ForgetRequest(forget=str(subscription_id))


# ── Вхідні повідомлення ────────────────────────────────────────────────────


@dataclass(frozen=True)
class HistoryMessage:
    instrument: str
    times: Tuple[int, ...]
    prices: Tuple[float, ...]
    subscription_id: Optional[str] = None

    def pairs(self) -> List[Tuple[int, float]]:
        return list(zip(self.times, self.prices))


@dataclass(frozen=True)
class TickMessage:
    instrument: str
    epoch: int
    quote: float
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class CandlesMessage:
    instrument: str
    candles: Tuple[CandlePayload, ...]
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class OhlcMessage:
    instrument: str
    open_time: int
    open: float
    high: float
    low: float
    close: float
    granularity: int
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class ErrorMessage:
    code: str
    message: str
    instrument: Optional[str] = None
    request_type: Optional[str] = None

    @property
    def invalid_instrument(self) -> bool:
        return self.code == INVALID_SYMBOL_CODE


@dataclass(frozen=True)
class AckMessage:
    """Службові підтвердження (forget/ping) — стан вікна не змінюють."""

    msg_type: str


InboundMessage = Union[
    HistoryMessage, TickMessage, CandlesMessage, OhlcMessage, ErrorMessage, AckMessage
]


def _subscription_id(payload: Mapping[str, Any]) -> Optional[str]:
    subscription = payload.get("subscription")
    if isinstance(subscription, Mapping):
        sub_id = subscription.get("id")
        if sub_id:
            return str(sub_id)
    return None


def _echo_instrument(payload: Mapping[str, Any]) -> Optional[str]:
    echo = payload.get("echo_req")
    if isinstance(echo, Mapping):
        value = echo.get("ticks_history") or echo.get("ticks")
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _require_mapping(payload: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = payload.get(key)
    if not isinstance(value, Mapping):
        raise ProtocolError(f"Поле {key!r} відсутнє або не є об'єктом.")
    return value


def _to_float(value: Any, label: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ProtocolError(f"Некоректне числове значення {label}: {value!r}") from None


def _to_int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ProtocolError(f"Некоректне цілочисельне значення {label}: {value!r}") from None


def _decode_history(payload: Mapping[str, Any]) -> HistoryMessage:
    history = _require_mapping(payload, "history")
    times_raw = history.get("times")
    prices_raw = history.get("prices")
    if not isinstance(times_raw, list) or not isinstance(prices_raw, list):
        raise ProtocolError("history.times/history.prices мають бути списками.")
    if len(times_raw) != len(prices_raw):
        raise ProtocolError(
            f"Довжини history.times ({len(times_raw)}) та history.prices ({len(prices_raw)}) не збігаються."
        )
    instrument = _echo_instrument(payload)
    if instrument is None:
        raise ProtocolError("history без echo_req.ticks_history — інструмент невідомий.")
    times = tuple(_to_int(value, "history.times") for value in times_raw)
    prices = tuple(_to_float(value, "history.prices") for value in prices_raw)
    return HistoryMessage(
        instrument=instrument,
        times=times,
        prices=prices,
        subscription_id=_subscription_id(payload),
    )


def _decode_tick(payload: Mapping[str, Any]) -> TickMessage:
    tick = _require_mapping(payload, "tick")
    symbol = tick.get("symbol") or _echo_instrument(payload)
    if not isinstance(symbol, str) or not symbol.strip():
        raise ProtocolError("tick.symbol відсутній.")
    sub_id = _subscription_id(payload) or (str(tick["id"]) if tick.get("id") else None)
    return TickMessage(
        instrument=symbol.strip(),
        epoch=_to_int(tick.get("epoch"), "tick.epoch"),
        quote=_to_float(tick.get("quote"), "tick.quote"),
        subscription_id=sub_id,
    )


def _decode_candles(payload: Mapping[str, Any]) -> CandlesMessage:
    raw_candles = payload.get("candles")
    if not isinstance(raw_candles, list):
        raise ProtocolError("candles має бути списком.")
    instrument = _echo_instrument(payload)
    if instrument is None:
        raise ProtocolError("candles без echo_req.ticks_history — інструмент невідомий.")
    candles: List[CandlePayload] = []
    for idx, item in enumerate(raw_candles):
        if not isinstance(item, Mapping):
            raise ProtocolError(f"Свічка #{idx} має бути JSON-об'єктом.")
        candles.append(
            CandlePayload(
                epoch=_to_int(item.get("epoch"), "candles.epoch"),
                open=_to_float(item.get("open"), "candles.open"),
                high=_to_float(item.get("high"), "candles.high"),
                low=_to_float(item.get("low"), "candles.low"),
                close=_to_float(item.get("close"), "candles.close"),
            )
        )
    return CandlesMessage(
        instrument=instrument,
        candles=tuple(candles),
        subscription_id=_subscription_id(payload),
    )


def _decode_ohlc(payload: Mapping[str, Any]) -> OhlcMessage:
    ohlc = _require_mapping(payload, "ohlc")
    symbol = ohlc.get("symbol") or _echo_instrument(payload)
    if not isinstance(symbol, str) or not symbol.strip():
        raise ProtocolError("ohlc.symbol відсутній.")
    open_time = ohlc.get("open_time", ohlc.get("epoch"))
    return OhlcMessage(
        instrument=symbol.strip(),
        open_time=_to_int(open_time, "ohlc.open_time"),
        open=_to_float(ohlc.get("open"), "ohlc.open"),
        high=_to_float(ohlc.get("high"), "ohlc.high"),
        low=_to_float(ohlc.get("low"), "ohlc.low"),
        close=_to_float(ohlc.get("close"), "ohlc.close"),
        granularity=_to_int(ohlc.get("granularity", 0), "ohlc.granularity"),
        subscription_id=_subscription_id(payload) or (str(ohlc["id"]) if ohlc.get("id") else None),
    )


def _decode_error(payload: Mapping[str, Any]) -> ErrorMessage:
    error = _require_mapping(payload, "error")
    msg_type = payload.get("msg_type")
    return ErrorMessage(
        code=str(error.get("code") or "UnknownError"),
        message=str(error.get("message") or ""),
        instrument=_echo_instrument(payload),
        request_type=str(msg_type) if msg_type else None,
    )


_DECODERS = {
    "history": _decode_history,
    "tick": _decode_tick,
    "candles": _decode_candles,
    "ohlc": _decode_ohlc,
}


def decode_message(raw: Union[str, bytes, Mapping[str, Any]]) -> InboundMessage:
    """Декодує сире повідомлення фіду в один із варіантів `InboundMessage`.

    Сервер позначає помилку наявністю об'єкта `error` (при цьому `msg_type`
    дорівнює типу запиту), тому помилка перевіряється першою.
    """

    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ProtocolError("Не вдалося розпарсити JSON-повідомлення фіду") from exc
    else:
        payload = raw
    if not isinstance(payload, Mapping):
        raise ProtocolError("Очікувався JSON-об'єкт.")

    if isinstance(payload.get("error"), Mapping):
        return _decode_error(payload)

    msg_type = payload.get("msg_type")
    if not isinstance(msg_type, str):
        raise ProtocolError("Відсутній дискримінант msg_type.")
    decoder = _DECODERS.get(msg_type)
    if decoder is not None:
        return decoder(payload)
    if msg_type in ACK_MESSAGE_TYPES:
        return AckMessage(msg_type=msg_type)
    raise ProtocolError(f"Невідомий msg_type {msg_type!r}.")


def encode_request(request: Mapping[str, Any]) -> str:
    return json.dumps(dict(request), separators=(",", ":"))


def history_pairs_from_response(payload: Mapping[str, Any]) -> List[Tuple[int, float]]:
    """Розбирає відповідь разового запиту історії у пари `(epoch, price)`.

    Сервер може не повертати echo_req у деяких обгортках, тому тут інструмент
    не вимагається — пари беруться безпосередньо з `history`.
    """

    if isinstance(payload.get("error"), Mapping):
        error = _decode_error(payload)
        raise UpstreamDataError(error.code, error.message)
    history = _require_mapping(payload, "history")
    times_raw = history.get("times")
    prices_raw = history.get("prices")
    if not isinstance(times_raw, list) or not isinstance(prices_raw, list):
        raise ProtocolError("history.times/history.prices мають бути списками.")
    if len(times_raw) != len(prices_raw):
        raise ProtocolError("Довжини history.times та history.prices не збігаються.")
    return [
        (_to_int(epoch, "history.times"), _to_float(price, "history.prices"))
        for epoch, price in zip(times_raw, prices_raw)
    ]
