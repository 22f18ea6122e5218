import os
import sys
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional

import httpx
import pyarrow as pa

from .arrow_io import ARROW_STREAM, ipc_to_batches, table_to_ipc
from .channel import Mailbox
from .context import SQLContext
from .errors import ClusterError, WorkerUnavailableError, error_from_payload
from .models import (
    ClusterConfig, ContextSettings, CreateTableRequest, ExplainRequest, ExplainResponse,
    SqlRequest, TableSource, WorkerMode, WorkerState, WorkerStatus,
    STARTUP_TIMEOUT, REQUEST_TIMEOUT,
)

logger = logging.getLogger(__name__)

PROBE_INTERVAL = 0.2


class WorkerHandle(ABC):
    """One execution unit as seen from the coordinator.

    Every call races the kill switch: once ``kill()`` runs, calls still in
    flight resolve to WorkerUnavailableError and new calls fail right away.
    """

    kind = "worker"

    def __init__(self, worker_id: int, query_timeout: Optional[float] = None):
        self._id = worker_id
        self._query_timeout = query_timeout
        self._killed = asyncio.Event()
        self.state = WorkerState.STARTING

    @property
    def id(self) -> int:
        return self._id

    @property
    def name(self) -> str:
        return f"worker-{self._id}"

    def __repr__(self):
        return f"<{type(self).__name__} {self._id} {self.state.value}>"

    async def _guard(self, coro, timeout: Optional[float] = None, require_ready: bool = True):
        if self.state == WorkerState.TERMINATED:
            coro.close()
            raise WorkerUnavailableError(f"{self.name} was killed")
        if require_ready and self.state != WorkerState.READY:
            coro.close()
            raise WorkerUnavailableError(f"{self.name} has no context yet")
        call = asyncio.ensure_future(coro)
        killed = asyncio.ensure_future(self._killed.wait())
        try:
            done, _ = await asyncio.wait({call, killed}, timeout=timeout,
                                         return_when=asyncio.FIRST_COMPLETED)
        finally:
            killed.cancel()
            if not call.done():
                call.cancel()
        if call in done:
            return call.result()
        if killed in done:
            raise WorkerUnavailableError(f"{self.name} was killed while a call was pending")
        raise WorkerUnavailableError(f"{self.name} did not answer within {timeout}s")

    async def start(self):
        """Bring the worker up far enough to accept ``create_context``."""

    async def create_context(self, settings: ContextSettings):
        await self._guard(self._create_context(settings), require_ready=False)
        self.state = WorkerState.READY

    async def create_table(self, name: str, source: TableSource):
        await self._guard(self._create_table(name, source))

    async def drop_table(self, name: str):
        await self._guard(self._drop_table(name))

    async def sql(self, query: str, token: int) -> List[pa.RecordBatch]:
        return await self._guard(self._sql(query, token), timeout=self._query_timeout)

    async def explain(self, query: str, detail: bool = False) -> str:
        return await self._guard(self._explain(query, detail))

    async def list_tables(self) -> List[str]:
        return await self._guard(self._list_tables())

    async def describe_table(self, name: str) -> Dict[str, str]:
        return await self._guard(self._describe_table(name))

    async def deliver(self, message_id: str, token: int, table: pa.Table):
        await self._guard(self._deliver(message_id, token, table))

    async def discard(self, token: int) -> int:
        """Drop undelivered messages tagged with ``token``; returns how many."""
        return await self._guard(self._discard(token))

    def kill(self):
        """Terminate the worker. Safe to call any number of times."""
        if self.state == WorkerState.TERMINATED:
            return
        self.state = WorkerState.TERMINATED
        self._killed.set()
        try:
            self._terminate()
        except Exception as e:
            logger.warning(f"[{self.name}] Error while terminating: {e}")
        logger.info(f"[{self.name}] Killed")

    async def join(self, timeout: float = 5.0):
        """Wait for the killed worker's resources to be released."""

    def status(self) -> WorkerStatus:
        return WorkerStatus(worker_id=self._id, kind=self.kind, state=self.state)

    @abstractmethod
    async def _create_context(self, settings: ContextSettings): ...

    @abstractmethod
    async def _create_table(self, name: str, source: TableSource): ...

    @abstractmethod
    async def _drop_table(self, name: str): ...

    @abstractmethod
    async def _sql(self, query: str, token: int) -> List[pa.RecordBatch]: ...

    @abstractmethod
    async def _explain(self, query: str, detail: bool) -> str: ...

    @abstractmethod
    async def _list_tables(self) -> List[str]: ...

    @abstractmethod
    async def _describe_table(self, name: str) -> Dict[str, str]: ...

    @abstractmethod
    async def _deliver(self, message_id: str, token: int, table: pa.Table): ...

    @abstractmethod
    async def _discard(self, token: int) -> int: ...

    @abstractmethod
    def _terminate(self): ...


class LocalWorker(WorkerHandle):
    """Worker living in the coordinator's process.

    Deliveries hand over the Arrow table itself. Engine calls run in a
    thread so the event loop keeps draining other workers meanwhile.
    """

    kind = "local"

    def __init__(self, worker_id: int, query_timeout: Optional[float] = None):
        super().__init__(worker_id, query_timeout)
        self.context: Optional[SQLContext] = None
        self.mailbox = Mailbox()

    async def _create_context(self, settings: ContextSettings):
        if self.context is not None:
            self.context.close()
        self.context = await asyncio.to_thread(SQLContext, settings)

    async def _create_table(self, name, source):
        await asyncio.to_thread(self.context.create_table_from, name, source, self.mailbox)

    async def _drop_table(self, name):
        await asyncio.to_thread(self.context.drop_table, name)

    async def _run(self, fn, *args):
        # Cancelling the await does not stop the engine thread; interrupt it
        # so the connection lock is released for the next call.
        context = self.context
        try:
            return await asyncio.to_thread(fn, *args)
        except asyncio.CancelledError:
            logger.debug(f"[{self.name}] Call abandoned, interrupting the engine")
            context.interrupt()
            raise

    async def _sql(self, query, token):
        logger.debug(f"[{self.name}] Running query (token {token})")
        return await self._run(self.context.sql, query)

    async def _explain(self, query, detail):
        return await self._run(self.context.explain, query, detail)

    async def _list_tables(self):
        return self.context.list_tables()

    async def _describe_table(self, name):
        return self.context.describe_table(name)

    async def _deliver(self, message_id, token, table):
        self.mailbox.put(message_id, token, table)

    async def _discard(self, token):
        return self.mailbox.expire(token)

    def _terminate(self):
        self.mailbox.clear()
        if self.context is not None:
            self.context.close()


class RemoteWorker(WorkerHandle):
    """Worker running ``python -m sqlcluster.worker`` in a subprocess."""

    kind = "remote"

    def __init__(self, worker_id: int, host: str, port: int, env: Optional[Dict[str, str]] = None,
                 startup_timeout: float = STARTUP_TIMEOUT, request_timeout: float = REQUEST_TIMEOUT,
                 query_timeout: Optional[float] = None, log_level: str = "info"):
        super().__init__(worker_id, query_timeout)
        self.host = host
        self.port = port
        self.env = env
        self.startup_timeout = startup_timeout
        self.request_timeout = request_timeout
        self.log_level = log_level
        self._process: Optional[asyncio.subprocess.Process] = None
        connect_host = "127.0.0.1" if host in ("0.0.0.0", "") else host
        self.base_url = f"http://{connect_host}:{port}"

    def status(self) -> WorkerStatus:
        return WorkerStatus(worker_id=self._id, kind=self.kind, state=self.state, port=self.port)

    async def start(self):
        await self._guard(self._spawn(), require_ready=False)

    async def _spawn(self):
        self._process = await asyncio.create_subprocess_exec(
            sys.executable, "-m", "sqlcluster.worker",
            "--host", self.host,
            "--port", str(self.port),
            "--worker-id", str(self._id),
            "--log-level", self.log_level,
            env=self.env,
        )
        logger.info(f"[{self.name}] Spawned pid {self._process.pid} on {self.host}:{self.port}")
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        async with httpx.AsyncClient(timeout=2.0) as client:
            while True:
                if self._process.returncode is not None:
                    raise WorkerUnavailableError(
                        f"{self.name} exited with code {self._process.returncode} during startup")
                try:
                    resp = await client.get(f"{self.base_url}/health")
                    if resp.status_code == 200:
                        logger.info(f"[{self.name}] Up at {self.base_url}")
                        return
                except httpx.TransportError:
                    pass
                if loop.time() > deadline:
                    raise WorkerUnavailableError(
                        f"{self.name} not reachable after {self.startup_timeout}s")
                await asyncio.sleep(PROBE_INTERVAL)

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=self.request_timeout) as client:
                resp = await client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TransportError as e:
            raise WorkerUnavailableError(f"{self.name} unreachable: {e}") from e
        if resp.is_error:
            try:
                payload = resp.json()
                raise error_from_payload(payload["error"], payload["detail"])
            except (ValueError, KeyError, TypeError):
                raise ClusterError(f"{self.name} answered {resp.status_code}: {resp.text}") from None
        return resp

    async def _create_context(self, settings):
        await self._request("POST", "/context", json=settings.model_dump(mode="json"))

    async def _create_table(self, name, source):
        req = CreateTableRequest(name=name, source=source)
        await self._request("POST", "/tables", json=req.model_dump(mode="json"))

    async def _drop_table(self, name):
        await self._request("DELETE", f"/tables/{name}")

    async def _sql(self, query, token):
        resp = await self._request("POST", "/sql", json=SqlRequest(query=query, token=token).model_dump())
        _, batches = ipc_to_batches(resp.content)
        return batches

    async def _explain(self, query, detail):
        resp = await self._request("POST", "/explain", json=ExplainRequest(query=query, detail=detail).model_dump())
        return ExplainResponse(**resp.json()).plan

    async def _list_tables(self):
        return (await self._request("GET", "/tables")).json()

    async def _describe_table(self, name):
        return (await self._request("GET", f"/tables/{name}")).json()

    async def _deliver(self, message_id, token, table):
        await self._request(
            "POST", f"/channel/{message_id}",
            params={"token": token},
            content=table_to_ipc(table),
            headers={"content-type": ARROW_STREAM},
        )

    async def _discard(self, token):
        resp = await self._request("DELETE", "/channel", params={"token": token})
        return resp.json()["expired"]

    def _terminate(self):
        if self._process is not None and self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass

    async def join(self, timeout: float = 5.0):
        if self._process is None:
            return
        try:
            await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] Still running after {timeout}s, sending SIGKILL")
            self._process.kill()
            await self._process.wait()


def create_workers(config: ClusterConfig) -> List[WorkerHandle]:
    workers: List[WorkerHandle] = []
    for i in range(config.num_workers):
        local = config.worker_mode == WorkerMode.LOCAL or (
            config.worker_mode == WorkerMode.MIXED and i == 0)
        if local:
            workers.append(LocalWorker(i, query_timeout=config.query_timeout))
        else:
            env = {**os.environ, config.device_env_var: config.device_for(i)}
            workers.append(RemoteWorker(
                i,
                host=config.ip,
                port=config.worker_port(i),
                env=env,
                startup_timeout=config.startup_timeout,
                request_timeout=config.request_timeout,
                query_timeout=config.query_timeout,
                log_level="debug" if config.enable_logging else "info",
            ))
    return workers
