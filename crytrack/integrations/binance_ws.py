from __future__ import annotations

import itertools
import json
import logging
import math
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional

from crytrack.errors import MalformedMessageError
from crytrack.schemas.quote import PriceQuote, normalize_symbol

logger = logging.getLogger(__name__)

BOOTSTRAPPING = "BOOTSTRAPPING"
CONNECTING = "CONNECTING"
SUBSCRIBING = "SUBSCRIBING"
STREAMING = "STREAMING"
RECONNECTING = "RECONNECTING"
CLOSED = "CLOSED"

TRADE_EVENT = "trade"

# time-derived, strictly increasing within the process
_request_ids = itertools.count(int(time.time() * 1000))
_session_ids = itertools.count(1)


def next_request_id() -> int:
    return next(_request_ids)


def stream_channel(symbol: str) -> str:
    return f"{normalize_symbol(symbol).lower()}@{TRADE_EVENT}"


def build_subscribe_message(symbols: Iterable[str], request_id: int) -> Dict[str, Any]:
    return {
        "id": request_id,
        "method": "SUBSCRIBE",
        "params": [stream_channel(symbol) for symbol in symbols],
    }


def _decode(payload: Any) -> Dict[str, Any]:
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8", errors="replace")
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise MalformedMessageError("payload must be valid JSON") from exc
    if not isinstance(payload, dict):
        raise MalformedMessageError("payload must be a JSON object")
    return payload


def parse_trade_message(payload: dict | str | bytes) -> tuple[str, str]:
    """Return ``(symbol, price)`` from a Binance short-key trade frame.

    The price is returned as the raw decimal string so it can be displayed
    without float round-tripping.
    """
    raw = _decode(payload)

    if raw.get("e") != TRADE_EVENT:
        raise MalformedMessageError(f"not a trade event: e={raw.get('e')!r}")

    symbol = raw.get("s")
    if not symbol or not isinstance(symbol, str):
        raise MalformedMessageError("missing symbol in trade event")

    price = raw.get("p")
    if price is None or price == "":
        raise MalformedMessageError("missing price in trade event")
    price = str(price)
    # float() accepts digit separators the exchange never sends
    if "_" in price:
        raise MalformedMessageError(f"invalid price in trade event: {price!r}")
    try:
        value = float(price)
    except ValueError as exc:
        raise MalformedMessageError(f"invalid price in trade event: {price!r}") from exc
    if not math.isfinite(value):
        raise MalformedMessageError(f"non-finite price in trade event: {price!r}")

    return normalize_symbol(symbol), price


def compute_change_24h(price: float, baseline: float | None) -> float | None:
    if baseline is None:
        return None
    return (price - baseline) / baseline * 100


def _is_ack(raw: Dict[str, Any]) -> bool:
    return "id" in raw and ("result" in raw or "error" in raw) and "e" not in raw


class FeedSession:
    """One bootstrap + connect + stream lifecycle for a fixed symbol selection.

    The selection and callback are bound at construction; a new selection
    means a new session. Reconnects run the whole sequence again with a
    freshly fetched baseline map and stop once :meth:`close` is called.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        on_update: Callable[[PriceQuote], None],
        *,
        baseline_client: Any,
        ws_url: str = "wss://stream.binance.com:9443/ws",
        reconnect_delay_sec: float = 5.0,
        ack_timeout_sec: float = 5.0,
        bootstrap_workers: int = 8,
        websocket_app_factory: Optional[Callable[..., Any]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_id = next(_session_ids)
        self.symbols: tuple[str, ...] = tuple(dict.fromkeys(normalize_symbol(s) for s in symbols if str(s).strip()))
        self._on_update = on_update
        self._baseline_client = baseline_client
        self.ws_url = ws_url
        self.reconnect_delay_sec = reconnect_delay_sec
        self.ack_timeout_sec = ack_timeout_sec
        self.bootstrap_workers = bootstrap_workers
        self._websocket_app_factory = websocket_app_factory or self._default_websocket_app_factory
        self._clock = clock

        self.state = BOOTSTRAPPING
        self.baselines: dict[str, float] = {}
        self.last_error: str | None = None
        self.reconnect_count = 0
        self.connect_attempts = 0
        self.trade_messages = 0
        self.dropped_messages = 0

        self._closing = threading.Event()
        self._ws_app: Any = None
        self._request_id: int | None = None
        self._subscribe_sent_at: float | None = None
        self._subscribe_rejected = False
        self._thread: threading.Thread | None = None

    def _default_websocket_app_factory(self, *args: Any, **kwargs: Any) -> Any:
        from websocket import WebSocketApp

        return WebSocketApp(*args, **kwargs)

    @property
    def active(self) -> bool:
        return not self._closing.is_set()

    def _set_state(self, state: str) -> None:
        if self.state == CLOSED:
            return
        if state != self.state:
            logger.debug("[WS][state] session=%d %s->%s", self.session_id, self.state, state)
        self.state = state

    def is_ready(self, now: float | None = None) -> bool:
        """Streaming is confirmed by an ack or a trade; otherwise by ack timeout."""
        if self.state == STREAMING:
            return True
        if self._subscribe_rejected:
            return False
        if self.state != SUBSCRIBING or self._subscribe_sent_at is None:
            return False
        ref = self._clock() if now is None else now
        return ref - self._subscribe_sent_at >= self.ack_timeout_sec

    def bootstrap(self) -> dict[str, float]:
        self._set_state(BOOTSTRAPPING)
        return self._baseline_client.fetch_baselines(self.symbols, max_workers=self.bootstrap_workers)

    def send_subscribe(self, ws: Any) -> int:
        request_id = next_request_id()
        ws.send(json.dumps(build_subscribe_message(self.symbols, request_id)))
        self._request_id = request_id
        self._subscribe_sent_at = self._clock()
        self._subscribe_rejected = False
        self._set_state(SUBSCRIBING)
        logger.info(
            "[WS][ws_subscribe] session=%d id=%d symbols=%s",
            self.session_id,
            request_id,
            ",".join(self.symbols),
        )
        return request_id

    def _handle_ack(self, raw: Dict[str, Any]) -> None:
        if raw.get("id") != self._request_id:
            logger.debug("[WS][ws_ack_skip] session=%d id=%s", self.session_id, raw.get("id"))
            return
        if raw.get("error"):
            self.last_error = str(raw["error"])
            self._subscribe_rejected = True
            logger.warning("[WS][ws_subscribe_rejected] session=%d error=%s", self.session_id, self.last_error)
            return
        if self.state == SUBSCRIBING:
            self._set_state(STREAMING)
        logger.info("[WS][ws_subscribe_ack] session=%d id=%s", self.session_id, raw.get("id"))

    def handle_raw_message(self, payload: Any) -> PriceQuote | None:
        """Turn one inbound frame into a delivered quote, or drop it."""
        if not self.active:
            return None

        try:
            raw = _decode(payload)
            if _is_ack(raw):
                self._handle_ack(raw)
                return None
            symbol, price = parse_trade_message(raw)
        except MalformedMessageError as exc:
            self.dropped_messages += 1
            logger.warning("[WS][ws_message_skip] session=%d reason=%s", self.session_id, exc)
            return None

        if symbol not in self.symbols:
            self.dropped_messages += 1
            logger.warning("[WS][ws_message_skip] session=%d reason=unselected symbol=%s", self.session_id, symbol)
            return None

        if self.state == SUBSCRIBING:
            self._set_state(STREAMING)

        quote = PriceQuote(
            symbol=symbol,
            price=price,
            change24h=compute_change_24h(float(price), self.baselines.get(symbol)),
        )
        self.trade_messages += 1
        # close() may have landed while this frame was being parsed
        if not self.active:
            return None
        try:
            self._on_update(quote)
        except Exception:
            logger.exception("[WS][on_update_error] session=%d symbol=%s", self.session_id, symbol)
        return quote

    def connect_once(self) -> None:
        """Bootstrap baselines, open the stream and block until it closes."""
        self.connect_attempts += 1
        baselines = self.bootstrap()
        if not self.active:
            return
        # fresh map per attempt, never mutated afterwards
        self.baselines = baselines
        self._request_id = None
        self._subscribe_sent_at = None
        self._subscribe_rejected = False

        self._set_state(CONNECTING)
        logger.info(
            "[WS][ws_connect] session=%d url=%s symbols=%s baselines=%d",
            self.session_id,
            self.ws_url,
            ",".join(self.symbols),
            len(baselines),
        )
        state = {"opened": False}

        def _on_open(ws: Any) -> None:
            if not self.active:
                ws.close()
                return
            state["opened"] = True
            logger.info("[WS][ws_connect_result] session=%d status=open", self.session_id)
            self.send_subscribe(ws)

        def _on_message(_: Any, raw_message: Any) -> None:
            self.handle_raw_message(raw_message)

        def _on_error(_: Any, error: Any) -> None:
            self.last_error = str(error)
            logger.error("[WS][ws_error] session=%d error=%s", self.session_id, self.last_error)

        def _on_close(_: Any, code: Any, reason: Any) -> None:
            logger.warning("[WS][ws_close] session=%d code=%s reason=%s", self.session_id, code, reason)

        ws_app = self._websocket_app_factory(
            self.ws_url,
            on_open=_on_open,
            on_message=_on_message,
            on_error=_on_error,
            on_close=_on_close,
        )
        self._ws_app = ws_app
        try:
            ws_app.run_forever()
        finally:
            self._ws_app = None

        if self.active and not state["opened"]:
            raise RuntimeError("ws_open_not_confirmed")

    def run_with_reconnect(self, *, sleep_fn: Optional[Callable[[float], None]] = None) -> None:
        """Reconnect loop with a fixed delay, unbounded, until closed."""
        while self.active:
            try:
                self.connect_once()
            except Exception as exc:
                self.last_error = str(exc)
                logger.warning("[WS][ws_connect_failed] session=%d error=%s", self.session_id, exc)

            if not self.active:
                break

            self.reconnect_count += 1
            self._set_state(RECONNECTING)
            logger.warning(
                "[WS][ws_reconnect_scheduled] session=%d attempt=%d delay_sec=%s",
                self.session_id,
                self.reconnect_count,
                self.reconnect_delay_sec,
            )
            if sleep_fn is not None:
                sleep_fn(self.reconnect_delay_sec)
            elif self._closing.wait(self.reconnect_delay_sec):
                break

        self._set_state(CLOSED)
        logger.info("[WS][ws_session_end] session=%d", self.session_id)

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(
            target=self.run_with_reconnect,
            daemon=True,
            name=f"feed-session-{self.session_id}",
        )
        self._thread.start()

    def close(self) -> None:
        """Stop streaming and suppress any further reconnect."""
        if not self.active:
            return
        self._closing.set()
        self._set_state(CLOSED)
        logger.info("[WS][ws_session_close] session=%d", self.session_id)
        ws_app = self._ws_app
        if ws_app is not None:
            ws_app.close()

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)
