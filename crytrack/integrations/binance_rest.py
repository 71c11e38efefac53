from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Optional

import requests

from crytrack.schemas.quote import normalize_symbol

logger = logging.getLogger(__name__)


class BinanceRestClient:
    """Binance public REST client for 24h reference (opening) prices."""

    DEFAULT_BASE_URL = "https://api.binance.com/api/v3"

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[Any] = None,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.session = session or requests
        self.timeout = timeout

    @staticmethod
    def _to_price(value: Any) -> float:
        if value is None or value == "":
            raise ValueError("missing openPrice")
        try:
            price = float(value)
        except (TypeError, ValueError) as exc:
            raise ValueError(f"invalid openPrice: {value!r}") from exc
        if not math.isfinite(price) or price <= 0:
            raise ValueError(f"unusable openPrice: {value!r}")
        return price

    def get_price_24h_ago(self, symbol: str) -> float | None:
        """Return the 24h opening price for ``symbol``, or None when unavailable.

        Never raises: transport errors, non-2xx responses and malformed bodies
        are logged and reported as None. Nothing is cached between calls.
        """
        symbol = normalize_symbol(symbol)
        try:
            response = self.session.get(
                f"{self.base_url}/ticker/24hr",
                params={"symbol": symbol},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
            if not isinstance(payload, dict):
                raise ValueError("response body must be an object")
            return self._to_price(payload.get("openPrice"))
        except (requests.RequestException, ValueError) as exc:
            logger.warning("[REST][baseline_unavailable] symbol=%s error=%s", symbol, exc)
            return None

    def fetch_baselines(self, symbols: Iterable[str], *, max_workers: int = 8) -> dict[str, float]:
        """Fetch baselines concurrently; symbols without one are left out."""
        unique: list[str] = []
        for symbol in symbols:
            value = normalize_symbol(symbol)
            if value and value not in unique:
                unique.append(value)
        if not unique:
            return {}

        workers = max(1, min(max_workers, len(unique)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="baseline-fetch") as pool:
            prices = list(pool.map(self.get_price_24h_ago, unique))

        baselines = {symbol: price for symbol, price in zip(unique, prices) if price is not None}
        logger.info(
            "[REST][baseline_bootstrap] target_count=%d resolved_count=%d",
            len(unique),
            len(baselines),
        )
        return baselines
