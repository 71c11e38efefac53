from __future__ import annotations

import threading
import time
from typing import Callable, Iterable

from crytrack.schemas.quote import PriceQuote, normalize_symbol

SORT_KEYS = ("price", "change24h")


def _price_value(quote: PriceQuote) -> float:
    try:
        return float(quote.price)
    except ValueError:
        return 0.0


class QuoteBoard:
    """Latest quote per selected symbol, as shown in the list view."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rows: dict[str, PriceQuote] = {}
        self._selection: set[str] | None = None

    def reset(self, symbols: Iterable[str]) -> None:
        selection = [normalize_symbol(s) for s in symbols]
        with self._lock:
            self._selection = set(selection)
            rows = {s: row for s, row in self._rows.items() if s in self._selection}
            for symbol in selection:
                # placeholder until the first trade arrives
                rows.setdefault(symbol, PriceQuote(symbol=symbol, price="0", change24h=None))
            self._rows = rows

    def upsert(self, quote: PriceQuote) -> bool:
        with self._lock:
            if self._selection is not None and quote.symbol not in self._selection:
                return False
            self._rows[quote.symbol] = quote
            return True

    def get(self, symbol: str) -> PriceQuote | None:
        with self._lock:
            return self._rows.get(normalize_symbol(symbol))

    def list_all(self) -> list[PriceQuote]:
        with self._lock:
            return list(self._rows.values())

    def sorted(self, sort_by: str = "price") -> list[PriceQuote]:
        if sort_by not in SORT_KEYS:
            raise ValueError(f"sort_by must be one of: {', '.join(SORT_KEYS)}")
        rows = self.list_all()
        if sort_by == "price":
            return sorted(rows, key=_price_value, reverse=True)
        return sorted(rows, key=lambda q: q.change24h or 0.0, reverse=True)


class QuoteThrottle:
    """Per-symbol leading/trailing throttle where the latest quote wins.

    A quote is emitted at once if the symbol has not emitted within the
    window; otherwise it replaces whatever is pending for that symbol and is
    emitted by :meth:`flush` once the window elapses.
    """

    def __init__(
        self,
        sink: Callable[[PriceQuote], object],
        interval_sec: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sink = sink
        self.interval_sec = interval_sec
        self._clock = clock
        self._lock = threading.Lock()
        self._last_emit: dict[str, float] = {}
        self._pending: dict[str, PriceQuote] = {}
        self.emitted = 0
        self.coalesced = 0

    def push(self, quote: PriceQuote, now: float | None = None) -> bool:
        ref = self._clock() if now is None else now
        with self._lock:
            last = self._last_emit.get(quote.symbol)
            if last is not None and ref - last < self.interval_sec:
                if quote.symbol in self._pending:
                    self.coalesced += 1
                self._pending[quote.symbol] = quote
                return False
            self._pending.pop(quote.symbol, None)
            self._last_emit[quote.symbol] = ref
            self.emitted += 1
        self.sink(quote)
        return True

    def flush(self, now: float | None = None) -> int:
        ref = self._clock() if now is None else now
        due: list[PriceQuote] = []
        with self._lock:
            for symbol, quote in list(self._pending.items()):
                if ref - self._last_emit.get(symbol, ref) >= self.interval_sec:
                    due.append(quote)
                    del self._pending[symbol]
                    self._last_emit[symbol] = ref
            self.emitted += len(due)
        for quote in due:
            self.sink(quote)
        return len(due)

    def discard(self, keep: Iterable[str]) -> None:
        keep_set = {normalize_symbol(s) for s in keep}
        with self._lock:
            self._pending = {s: q for s, q in self._pending.items() if s in keep_set}
            self._last_emit = {s: t for s, t in self._last_emit.items() if s in keep_set}

    def pending(self) -> dict[str, PriceQuote]:
        with self._lock:
            return dict(self._pending)


class QuoteIngestWorker:
    """Feed callback -> throttle -> board, plus a pump flushing trailing quotes."""

    def __init__(
        self,
        board: QuoteBoard,
        throttle_sec: float = 3.0,
        pump_interval_sec: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.board = board
        self.throttle = QuoteThrottle(self._apply, interval_sec=throttle_sec, clock=clock)
        self.pump_interval_sec = pump_interval_sec
        self.received = 0
        self.applied = 0
        self.rejected = 0
        self.last_quote_ts: int | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _apply(self, quote: PriceQuote) -> None:
        if self.board.upsert(quote):
            self.applied += 1
        else:
            self.rejected += 1

    def on_quote(self, quote: PriceQuote) -> None:
        self.received += 1
        self.last_quote_ts = int(time.time())
        self.throttle.push(quote)

    def reset_selection(self, symbols: list[str]) -> None:
        self.throttle.discard(symbols)
        self.board.reset(symbols)

    def _loop(self) -> None:
        while not self._stop_event.wait(self.pump_interval_sec):
            self.throttle.flush()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="quote-throttle-pump")
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=1.0)

    def metrics(self) -> dict:
        return {
            "tracked_symbols": len(self.board.list_all()),
            "quotes_received": self.received,
            "quotes_applied": self.applied,
            "quotes_rejected": self.rejected,
            "quotes_coalesced": self.throttle.coalesced,
            "quotes_pending": len(self.throttle.pending()),
            "last_quote_ts": self.last_quote_ts,
        }
