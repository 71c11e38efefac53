from pydantic import BaseModel


class SelectionRequest(BaseModel):
    symbols: list[str]


class FeedStatus(BaseModel):
    session_id: int | None = None
    symbols: list[str] = []
    state: str = "IDLE"
    ready: bool = False
    reconnect_count: int = 0
    last_error: str | None = None
    baselines: int = 0
    trade_messages: int = 0
    dropped_messages: int = 0
