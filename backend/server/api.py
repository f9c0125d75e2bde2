"""
Chart API routes, mounted as a sub-router on the main FastAPI app.

Charts:   POST /api/charts, GET /api/charts, GET/DELETE /api/charts/{id}
Editing:  PATCH /api/charts/{id}/spec, PATCH /api/charts/{id}/state,
          POST /api/charts/{id}/click, POST /api/charts/{id}/widgets/{index}
Filter:   GET /api/filter, POST /api/filter/reset
State:    GET /api/state, PUT /api/state, DELETE /api/session
Streaming: GET /api/charts/{id}/events (SSE)
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from sqlglot.errors import ParseError

from core.errors import QueryExecutionError, SpecValidationError
from core.models import AppState, ChartRequest, ClickRequest, DefaultChartsRequest, UpdateRequest, WidgetRequest
from server.sse import EVT_CLOSED, SSEChannel, watch_chart
from server.workspace import ChartNotFoundError, Workspace, drop_workspace, get_workspace

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["charts"])

# chart_id -> open SSE channels for that chart
_active_channels: Dict[str, list] = {}

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _workspace(request: Request) -> Workspace:
    return get_workspace(_require_session_id(request))


def _require_chart(ws: Workspace, chart_id: str) -> None:
    if chart_id not in ws.charts:
        raise HTTPException(status_code=404, detail=f"Chart '{chart_id}' not found.")


async def _run(ws: Workspace, coro) -> Any:
    """Await a workspace operation, translating engine errors to HTTP errors."""
    try:
        result = await coro
    except (SpecValidationError, ParseError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ChartNotFoundError as e:
        raise HTTPException(status_code=404, detail=f"Chart '{e.args[0]}' not found.")
    except QueryExecutionError as e:
        logger.exception("Query failed: %s", e.sql)
        raise HTTPException(status_code=500, detail=f"Query failed: {e}")
    await ws.settle()
    return result


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------

@router.post("/charts")
async def create_chart(request: Request, body: ChartRequest):
    ws = _workspace(request)
    chart_id = await _run(ws, ws.create_chart(body.spec, state=body.state))
    return ws.chart_payload(chart_id)


@router.post("/charts/defaults")
async def create_default_charts(request: Request, body: DefaultChartsRequest = DefaultChartsRequest()):
    """Create one suggested chart per column of the current table."""
    ws = _workspace(request)
    if not ws.tables:
        raise HTTPException(status_code=400, detail="No tables uploaded.")
    ids = await _run(ws, ws.create_default_charts(body.include, body.exclude, body.override))
    return {"charts": [ws.chart_payload(cid) for cid in ids]}


@router.get("/charts")
async def list_charts(request: Request):
    ws = _workspace(request)
    return {
        "charts": [
            {"id": cid, "title": r.spec.title if r.spec is not None else None}
            for cid, r in ws.charts.items()
        ]
    }


@router.get("/charts/{chart_id}")
async def get_chart(request: Request, chart_id: str):
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    await ws.settle()
    return {**ws.chart_payload(chart_id), "widgets": ws.widgets(chart_id)}


@router.delete("/charts/{chart_id}")
async def delete_chart(request: Request, chart_id: str):
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    ws.remove_chart(chart_id)
    for channel in _active_channels.pop(chart_id, []):
        await channel.emit(EVT_CLOSED, {"id": chart_id})
        await channel.close()
    await ws.settle()
    return {"ok": True}


@router.patch("/charts/{chart_id}/spec")
async def update_chart_spec(request: Request, chart_id: str, body: UpdateRequest):
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    await _run(ws, ws.update_spec(chart_id, body.value, body.mode))
    return ws.chart_payload(chart_id)


@router.patch("/charts/{chart_id}/state")
async def update_chart_state(request: Request, chart_id: str, body: UpdateRequest):
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    ws.set_state(chart_id, body.value, body.mode)
    await ws.settle()
    return ws.chart_payload(chart_id)


@router.post("/charts/{chart_id}/click")
async def click_chart(request: Request, chart_id: str, body: ClickRequest):
    """Toggle a value of a click selection (shift-click with ``additive``)."""
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    try:
        ws.click(chart_id, body.selection, body.axis, body.value, body.additive)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    await ws.settle()
    return ws.chart_payload(chart_id)


@router.post("/charts/{chart_id}/widgets/{index}")
async def set_chart_widget(request: Request, chart_id: str, index: int, body: WidgetRequest):
    ws = _workspace(request)
    _require_chart(ws, chart_id)
    await _run(ws, ws.set_widget(chart_id, index, body.value))
    return {**ws.chart_payload(chart_id), "widgets": ws.widgets(chart_id)}


@router.get("/charts/{chart_id}/events")
async def stream_chart_events(
    request: Request,
    chart_id: str,
    session_id: Optional[str] = Query(None, alias="session_id"),
):
    """
    SSE endpoint: streams a chart's outputs, state and errors as they change.

    EventSource doesn't support custom headers, so session_id is passed
    as a query parameter.
    """
    sid = session_id or request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing session_id query parameter.")
    ws = get_workspace(sid)
    _require_chart(ws, chart_id)

    channel = SSEChannel()
    stop = watch_chart(ws, chart_id, channel)
    _active_channels.setdefault(chart_id, []).append(channel)

    async def _stream():
        try:
            async for event_str in channel:
                yield event_str
        finally:
            stop()
            channels = _active_channels.get(chart_id, [])
            if channel in channels:
                channels.remove(channel)

    return StreamingResponse(_stream(), media_type="text/event-stream", headers=_SSE_HEADERS)


# ---------------------------------------------------------------------------
# Cross-filter & persisted state
# ---------------------------------------------------------------------------

@router.get("/filter")
async def get_filter(request: Request):
    ws = _workspace(request)
    return {
        "predicate": ws.filter.to_sql(),
        "clauses": [
            {"source": c.source.name, "value": c.value}
            for c in ws.filter.clauses
        ],
    }


@router.post("/filter/reset")
async def reset_filter(request: Request):
    ws = _workspace(request)
    ws.reset_filter()
    await ws.settle()
    return {"ok": True, "predicate": ws.filter.to_sql()}


@router.get("/state")
async def get_state(request: Request):
    ws = _workspace(request)
    return ws.snapshot().model_dump(by_alias=True)


@router.put("/state")
async def restore_state(request: Request, body: AppState):
    ws = _workspace(request)
    await _run(ws, ws.restore(body))
    return ws.snapshot().model_dump(by_alias=True)


@router.delete("/session")
async def close_session(request: Request):
    """Destroy every chart of the session and release its database."""
    ws = _workspace(request)
    for chart_id in list(ws.charts):
        for channel in _active_channels.pop(chart_id, []):
            await channel.emit(EVT_CLOSED, {"id": chart_id})
            await channel.close()
    drop_workspace(_require_session_id(request))
    return {"ok": True}
