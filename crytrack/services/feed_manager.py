from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable

from crytrack.errors import SelectionError
from crytrack.integrations.binance_ws import FeedSession
from crytrack.schemas.quote import PriceQuote, normalize_symbol
from crytrack.schemas.session import FeedStatus

logger = logging.getLogger(__name__)


def normalize_selection(symbols: Iterable[str], allowed: Iterable[str] | None = None) -> list[str]:
    out: list[str] = []
    for symbol in symbols:
        value = normalize_symbol(symbol)
        if value and value not in out:
            out.append(value)
    if not out:
        raise SelectionError("EMPTY_SELECTION")
    if allowed is not None:
        allowed_set = {normalize_symbol(s) for s in allowed}
        unsupported = [s for s in out if s not in allowed_set]
        if unsupported:
            raise SelectionError(f"UNSUPPORTED_SYMBOLS:{','.join(unsupported)}")
    return out


class FeedManager:
    """Owns the single current feed session for the active selection."""

    def __init__(
        self,
        *,
        session_factory: Callable[..., FeedSession],
        allowed_symbols: Iterable[str] | None = None,
        on_selection_change: Callable[[list[str]], None] | None = None,
        autostart: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self.allowed_symbols = list(allowed_symbols) if allowed_symbols is not None else None
        self._on_selection_change = on_selection_change
        self.autostart = autostart
        self._lock = threading.Lock()
        self._current: FeedSession | None = None
        self._on_update: Callable[[PriceQuote], None] | None = None
        self.sessions_started = 0

    @property
    def current(self) -> FeedSession | None:
        return self._current

    @property
    def selection(self) -> list[str]:
        session = self._current
        return list(session.symbols) if session is not None else []

    def start(self, selection: Iterable[str], on_update: Callable[[PriceQuote], None]) -> FeedSession:
        symbols = normalize_selection(selection, self.allowed_symbols)
        with self._lock:
            previous = self._current
            if previous is not None:
                previous.close()
            # display state follows the new selection before any new tick
            if self._on_selection_change is not None:
                self._on_selection_change(symbols)
            session = self._session_factory(symbols, on_update)
            self._current = session
            self._on_update = on_update
            self.sessions_started += 1
        logger.info(
            "[FEED][session_start] session=%d symbols=%s replaced=%s",
            session.session_id,
            ",".join(session.symbols),
            previous.session_id if previous is not None else None,
        )
        if self.autostart:
            session.start()
        return session

    def close(self, handle: FeedSession | None = None) -> None:
        with self._lock:
            session = handle or self._current
            if session is None:
                return
            if session is self._current:
                self._current = None
        session.close()

    def replace_selection(self, selection: Iterable[str]) -> FeedSession:
        if self._on_update is None:
            raise SelectionError("FEED_NOT_STARTED")
        return self.start(selection, self._on_update)

    def refresh(self) -> FeedSession:
        session = self._current
        if session is None or self._on_update is None:
            raise SelectionError("FEED_NOT_STARTED")
        return self.start(session.symbols, self._on_update)

    def shutdown(self, join_timeout: float = 1.0) -> None:
        session = self._current
        self.close()
        if session is not None:
            session.join(timeout=join_timeout)

    def status(self) -> FeedStatus:
        session = self._current
        if session is None:
            return FeedStatus()
        return FeedStatus(
            session_id=session.session_id,
            symbols=list(session.symbols),
            state=session.state,
            ready=session.is_ready(),
            reconnect_count=session.reconnect_count,
            last_error=session.last_error,
            baselines=len(session.baselines),
            trade_messages=session.trade_messages,
            dropped_messages=session.dropped_messages,
        )

    def metrics(self) -> dict[str, Any]:
        return {
            "sessions_started": self.sessions_started,
            **self.status().model_dump(),
        }
