import asyncio
import logging
import argparse
from contextlib import asynccontextmanager

import pyarrow as pa
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response

from .arrow_io import ARROW_STREAM, batches_to_ipc, ipc_to_table
from .channel import Mailbox
from .context import SQLContext
from .errors import ClusterError, WorkerUnavailableError
from .models import (
    ContextSettings, CreateTableRequest, ErrorResponse, ExplainRequest, ExplainResponse, SqlRequest,
)

logger = logging.getLogger("sqlcluster.worker")

WORKER_ID = 0

context: SQLContext = None
mailbox = Mailbox()


def _name():
    return f"worker-{WORKER_ID}"


def _context() -> SQLContext:
    if context is None:
        raise WorkerUnavailableError(f"{_name()} has no context yet")
    return context


@asynccontextmanager
async def lifespan(app):
    logger.info(f"[{_name()}] Starting...")
    yield
    logger.info(f"[{_name()}] Shutting down...")
    mailbox.clear()
    if context is not None:
        context.close()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ClusterError)
async def cluster_error(request: Request, exc: ClusterError):
    logger.info(f"[{_name()}] {request.method} {request.url.path} failed: {exc.code}: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.code, detail=exc.detail).model_dump(),
    )


@app.get("/health")
async def health():
    return {"worker_id": WORKER_ID, "ready": context is not None}


@app.post("/context")
async def create_context(settings: ContextSettings):
    global context
    if settings.enable_logging:
        logging.getLogger("sqlcluster").setLevel(logging.DEBUG)
    if context is not None:
        context.close()
    context = await asyncio.to_thread(SQLContext, settings)
    logger.info(f"[{_name()}] Context created with {len(settings.peers)} peers")
    return {"status": "ok"}


@app.post("/channel/{message_id}")
async def receive_message(message_id: str, token: int, request: Request):
    table = ipc_to_table(await request.body())
    mailbox.put(message_id, token, table)
    logger.debug(f"[{_name()}] Got {message_id}: {table.num_rows} rows (token {token})")
    return {"status": "ok"}


@app.delete("/channel")
async def discard_messages(token: int):
    expired = mailbox.expire(token)
    if expired:
        logger.debug(f"[{_name()}] Discarded {expired} messages (token {token})")
    return {"status": "ok", "expired": expired}


@app.post("/tables")
async def create_table(req: CreateTableRequest):
    await asyncio.to_thread(_context().create_table_from, req.name, req.source, mailbox)
    return {"status": "ok"}


@app.delete("/tables/{name}")
async def drop_table(name: str):
    await asyncio.to_thread(_context().drop_table, name)
    return {"status": "ok"}


@app.get("/tables")
async def list_tables():
    return _context().list_tables()


@app.get("/tables/{name}")
async def describe_table(name: str):
    return _context().describe_table(name)


@app.post("/explain")
async def explain(req: ExplainRequest):
    plan = await asyncio.to_thread(_context().explain, req.query, req.detail)
    return ExplainResponse(plan=plan)


@app.post("/sql")
async def sql(req: SqlRequest):
    ctx = _context()
    logger.debug(f"[{_name()}] SQL (token {req.token}): {req.query}")
    batches = await asyncio.to_thread(ctx.sql, req.query)
    schema = batches[0].schema if batches else pa.schema([])
    logger.debug(f"[{_name()}] SQL done (token {req.token}): {sum(b.num_rows for b in batches)} rows")
    return Response(content=batches_to_ipc(schema, batches), media_type=ARROW_STREAM)


if __name__ == "__main__":
    import uvicorn

    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=4001)
    parser.add_argument("--worker-id", type=int, default=1)
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    WORKER_ID = args.worker_id
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(message)s")

    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)
