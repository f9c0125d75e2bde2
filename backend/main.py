from fastapi import FastAPI, UploadFile, File, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from server.api import router as charts_router
from server.workspace import get_workspace
from core.errors import QueryExecutionError
from core.utils import json_safe
import pandas as pd
import io
import re
from dotenv import load_dotenv
import logging
import json

logger = logging.getLogger("uvicorn.error")
load_dotenv()
app = FastAPI(title="Cross-filter Charts", description="Linked, declarative charts over DuckDB")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount the chart API router
app.include_router(charts_router)


def require_session_id(request: Request) -> str:
    sid = request.headers.get("X-Session-Id")
    if not sid:
        raise HTTPException(status_code=400, detail="Missing X-Session-Id header.")
    return sid


def _log_response(ctx: str, payload) -> None:
    """Pretty-print JSON-able payloads; fall back to str()."""
    try:
        logger.info("%s response: %s", ctx, json.dumps(payload, indent=2, default=str))
    except (TypeError, ValueError):
        logger.info("%s response (non-serializable): %s", ctx, str(payload))


def table_name_for(filename: str) -> str:
    """SQL-friendly table name derived from an uploaded file name."""
    base = filename.rsplit(".", 1)[0] if filename else "table"
    name = re.sub(r"[^0-9a-zA-Z_]+", "_", base).strip("_").lower()
    if not name or name[0].isdigit():
        name = f"t_{name}"
    return name


@app.post("/upload")
async def upload(request: Request, file: UploadFile = File(...)):
    sid = require_session_id(request)
    content = await file.read()
    filename = file.filename or "table.csv"

    try:
        df = pd.read_csv(io.BytesIO(content))
    except (ValueError, pd.errors.ParserError) as e:
        logger.exception("Failed to read CSV")
        raise HTTPException(status_code=400, detail=f"Failed to read CSV: {e}")

    ws = get_workspace(sid)
    name = table_name_for(filename)
    try:
        ws.load_dataframe(df, name)
    except QueryExecutionError as e:
        logger.exception("Failed to load table")
        raise HTTPException(status_code=500, detail=f"Failed to load table: {e}")

    resp = {
        "ok": True,
        "table": name,
        "rows": len(df),
        "columns": [str(c) for c in df.columns],
    }
    _log_response("UPLOAD", resp)
    return resp


@app.get("/tables")
async def tables(request: Request):
    sid = require_session_id(request)
    ws = get_workspace(sid)
    resp = {
        "current": ws.table if ws.tables else None,
        "tables": [{"name": name, **meta} for name, meta in ws.tables.items()],
    }
    _log_response("TABLES", resp)
    return resp


@app.get("/table/{table_name}/preview")
async def table_preview(request: Request, table_name: str, offset: int = 0, limit: int = 50):
    """Get a preview of the table data with cursor pagination."""
    sid = require_session_id(request)
    ws = get_workspace(sid)
    if table_name not in ws.tables:
        raise HTTPException(status_code=404, detail=f"Table '{table_name}' not found")

    # Cap limit at 100 rows per request
    limit = min(max(limit, 0), 100)
    offset = max(offset, 0)
    total_rows = ws.tables[table_name]["rows"]
    df = await ws.coordinator.query(f'SELECT * FROM "{table_name}" LIMIT {limit} OFFSET {offset}')

    end = min(offset + limit, total_rows)
    has_more = end < total_rows
    rows = json_safe(df.astype(object).where(pd.notna(df), None).to_dict(orient="records"))
    return {
        "table": table_name,
        "columns": [str(c) for c in df.columns],
        "rows": rows,
        "total_rows": total_rows,
        "offset": offset,
        "limit": limit,
        "returned_rows": len(rows),
        "has_more": has_more,
        "next_offset": end if has_more else None,
    }
