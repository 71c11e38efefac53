from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from crytrack.api.routes import router
from crytrack.config.settings import AVAILABLE_SYMBOLS, get_settings
from crytrack.integrations.binance_rest import BinanceRestClient
from crytrack.integrations.binance_ws import FeedSession
from crytrack.services.feed_manager import FeedManager
from crytrack.services.quote_board import QuoteBoard, QuoteIngestWorker

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _build_session(symbols: list[str], on_update) -> FeedSession:
    settings = app.state.get_settings()
    baseline_client = BinanceRestClient(
        base_url=settings.BINANCE_REST_URL,
        session=app.state.rest_session,
        timeout=settings.FEED_HTTP_TIMEOUT_SEC,
    )
    return FeedSession(
        symbols,
        on_update,
        baseline_client=baseline_client,
        ws_url=settings.BINANCE_WS_URL,
        reconnect_delay_sec=settings.FEED_RECONNECT_DELAY_SEC,
        ack_timeout_sec=settings.FEED_ACK_TIMEOUT_SEC,
        bootstrap_workers=settings.FEED_BOOTSTRAP_WORKERS,
        websocket_app_factory=app.state.websocket_app_factory,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = app.state.get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL, format=LOG_FORMAT)

    worker = app.state.quote_ingest_worker
    worker.throttle.interval_sec = settings.FEED_THROTTLE_SEC
    manager = app.state.feed_manager
    manager.start(settings.FEED_SYMBOLS, worker.on_quote)
    worker.start()
    logger.info("[FEED][worker_start] symbols=%s", ",".join(settings.FEED_SYMBOLS))

    try:
        yield
    finally:
        manager.shutdown(join_timeout=1.0)
        worker.stop()
        logger.info("[FEED][worker_stop]")


app = FastAPI(title="CRYTrack Feed Gateway", version="0.1.0", lifespan=lifespan)
app.include_router(router, prefix="/v1")

# NOTE: transports are None by default so the real requests/websocket-client are used.
app.state.get_settings = get_settings
app.state.rest_session = None
app.state.websocket_app_factory = None
app.state.quote_ingest_worker = QuoteIngestWorker(QuoteBoard())
app.state.feed_manager = FeedManager(
    session_factory=_build_session,
    allowed_symbols=AVAILABLE_SYMBOLS,
    on_selection_change=app.state.quote_ingest_worker.reset_selection,
)
