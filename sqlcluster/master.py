import json
import logging
import argparse
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .arrow_io import ipc_to_table
from .cluster import SQLCluster
from .errors import ClusterError, WorkerUnavailableError
from .models import ClusterConfig, ErrorResponse, ExplainRequest, FileTableRequest, QueryRequest, WorkerState

logger = logging.getLogger("sqlcluster.master")

NDJSON = "application/x-ndjson"

cluster: SQLCluster = None


def _cluster() -> SQLCluster:
    if cluster is None:
        raise WorkerUnavailableError("cluster is not running")
    return cluster


@asynccontextmanager
async def lifespan(app):
    global cluster
    config = getattr(app.state, "config", None) or ClusterConfig.from_env()
    logger.info(f"[Master] Starting {config.num_workers} workers ({config.worker_mode.value})...")
    cluster = await SQLCluster.init(config)
    try:
        yield
    finally:
        logger.info("[Master] Shutting down...")
        await cluster.close()
        cluster = None


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ClusterError)
async def cluster_error(request: Request, exc: ClusterError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(error=exc.code, detail=exc.detail).model_dump(),
    )


@app.get("/status")
async def status():
    workers = _cluster().status()
    return {
        "workers": len([w for w in workers if w.state == WorkerState.READY]),
        "worker_list": [w.model_dump(mode="json") for w in workers],
        "next_token": _cluster().allocator.peek(),
    }


@app.get("/tables")
async def list_tables():
    return await _cluster().list_tables()


@app.get("/tables/{name}")
async def describe_table(name: str):
    return await _cluster().describe_table(name)


@app.post("/tables/{name}/files")
async def create_file_table(name: str, req: FileTableRequest):
    await _cluster().create_file_table(name, req.paths, req.file_type)
    return {"status": "ok", "table": name}


@app.post("/tables/{name}/arrow")
async def create_arrow_table(name: str, request: Request):
    table = ipc_to_table(await request.body())
    await _cluster().create_dataframe_table(name, table)
    return {"status": "ok", "table": name, "rows": table.num_rows}


@app.delete("/tables/{name}")
async def drop_table(name: str):
    await _cluster().drop_table(name)
    return {"status": "ok"}


@app.post("/explain")
async def explain(req: ExplainRequest):
    return {"plan": await _cluster().explain(req.query, req.detail)}


@app.post("/sql")
async def sql(req: QueryRequest):
    stream = _cluster().sql(req.query)
    # Failures before the first batch still get a proper status code.
    try:
        first = await stream.__anext__()
    except StopAsyncIteration:
        return StreamingResponse(iter(()), media_type=NDJSON)

    async def lines():
        yield json.dumps({"rows": first.to_pylist()}, default=str) + "\n"
        try:
            async for batch in stream:
                yield json.dumps({"rows": batch.to_pylist()}, default=str) + "\n"
        except ClusterError as e:
            # Status line is already sent; report the failure in-band.
            logger.warning(f"[Master] Query failed mid-stream: {e.code}: {e.detail}")
            yield ErrorResponse(error=e.code, detail=e.detail).model_dump_json() + "\n"

    return StreamingResponse(lines(), media_type=NDJSON)


if __name__ == "__main__":
    import uvicorn

    parser = argparse.ArgumentParser()
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--num-workers", type=int, default=None)
    parser.add_argument("--worker-mode", default=None, choices=["mixed", "local", "remote"])
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    overrides = {}
    if args.num_workers:
        overrides["num_workers"] = args.num_workers
    if args.worker_mode:
        overrides["worker_mode"] = args.worker_mode
    app.state.config = ClusterConfig.from_env(**overrides)

    uvicorn.run(app, host=args.host, port=args.port)
