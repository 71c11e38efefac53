import os
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field

AVAILABLE_SYMBOLS = [
    "BTCUSDT",
    "ETHUSDT",
    "XRPUSDT",
    "ADAUSDT",
    "SOLUSDT",
    "DOTUSDT",
    "DOGEUSDT",
    "LTCUSDT",
    "BNBUSDT",
]

DEFAULT_FEED_SYMBOLS = ["BTCUSDT", "ETHUSDT", "XRPUSDT"]


def parse_symbol_list(raw: str) -> list[str]:
    out: list[str] = []
    for item in raw.split(","):
        symbol = item.strip().upper()
        if symbol and symbol not in out:
            out.append(symbol)
    return out


class Settings(BaseModel):
    BINANCE_REST_URL: str = "https://api.binance.com/api/v3"
    BINANCE_WS_URL: str = "wss://stream.binance.com:9443/ws"
    FEED_SYMBOLS: list[str] = Field(default_factory=lambda: list(DEFAULT_FEED_SYMBOLS))
    FEED_RECONNECT_DELAY_SEC: float = Field(default=5.0, gt=0)
    FEED_THROTTLE_SEC: float = Field(default=3.0, gt=0)
    FEED_BOOTSTRAP_WORKERS: int = Field(default=8, gt=0)
    FEED_ACK_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    FEED_HTTP_TIMEOUT_SEC: float = Field(default=5.0, gt=0)
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        feed_symbols = parse_symbol_list(os.getenv("FEED_SYMBOLS", ""))
        if not feed_symbols:
            feed_symbols = list(DEFAULT_FEED_SYMBOLS)

        raw = {
            "BINANCE_REST_URL": os.getenv("BINANCE_REST_URL"),
            "BINANCE_WS_URL": os.getenv("BINANCE_WS_URL"),
            "FEED_RECONNECT_DELAY_SEC": os.getenv("FEED_RECONNECT_DELAY_SEC"),
            "FEED_THROTTLE_SEC": os.getenv("FEED_THROTTLE_SEC"),
            "FEED_BOOTSTRAP_WORKERS": os.getenv("FEED_BOOTSTRAP_WORKERS"),
            "FEED_ACK_TIMEOUT_SEC": os.getenv("FEED_ACK_TIMEOUT_SEC"),
            "FEED_HTTP_TIMEOUT_SEC": os.getenv("FEED_HTTP_TIMEOUT_SEC"),
            "LOG_LEVEL": os.getenv("LOG_LEVEL"),
        }
        # unset vars fall back to field defaults
        values = {key: value for key, value in raw.items() if value is not None}
        values["FEED_SYMBOLS"] = feed_symbols
        return cls.model_validate(values)


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()
