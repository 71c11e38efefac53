from pydantic import BaseModel


def normalize_symbol(symbol: str) -> str:
    return str(symbol).strip().upper()


class PriceQuote(BaseModel):
    symbol: str
    # raw decimal string as received from the exchange
    price: str
    change24h: float | None = None
