from fastapi import APIRouter, HTTPException, Request

from crytrack.config.settings import AVAILABLE_SYMBOLS
from crytrack.errors import SelectionError
from crytrack.schemas.session import SelectionRequest
from crytrack.services.quote_board import SORT_KEYS

router = APIRouter()


@router.get('/symbols')
def list_symbols():
    return {'symbols': list(AVAILABLE_SYMBOLS)}


@router.get('/selection')
def get_selection(request: Request):
    return {'symbols': request.app.state.feed_manager.selection}


@router.put('/selection')
def replace_selection(req: SelectionRequest, request: Request):
    manager = request.app.state.feed_manager
    try:
        if manager.current is None:
            manager.start(req.symbols, request.app.state.quote_ingest_worker.on_quote)
        else:
            manager.replace_selection(req.symbols)
    except SelectionError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return manager.status().model_dump()


@router.post('/feed/refresh')
def refresh_feed(request: Request):
    manager = request.app.state.feed_manager
    try:
        manager.refresh()
    except SelectionError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return manager.status().model_dump()


@router.get('/feed/status')
def get_feed_status(request: Request):
    return request.app.state.feed_manager.status().model_dump()


@router.get('/quotes')
def get_quotes(request: Request, sort_by: str = 'price'):
    if sort_by not in SORT_KEYS:
        raise HTTPException(status_code=400, detail='INVALID_SORT_KEY')
    board = request.app.state.quote_ingest_worker.board
    return [row.model_dump() for row in board.sorted(sort_by)]


@router.get('/quotes/{symbol}')
def get_quote(symbol: str, request: Request):
    row = request.app.state.quote_ingest_worker.board.get(symbol)
    if row is None:
        raise HTTPException(status_code=404, detail='SYMBOL_NOT_TRACKED')
    return row.model_dump()


@router.get('/metrics/feed')
def get_feed_metrics(request: Request):
    return {
        **request.app.state.quote_ingest_worker.metrics(),
        **request.app.state.feed_manager.metrics(),
    }
