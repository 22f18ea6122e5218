import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence

import pyarrow as pa

from .arrow_io import schema_to_b64
from .channel import Channel, broadcast_message_id
from .errors import ExecutionError, WorkerUnavailableError
from .models import ClusterConfig, ContextSettings, FileType, PeerInfo, TableSource, WorkerStatus
from .planner import empty_table, plan_assignments
from .sources import parse_schema
from .tokens import TokenAllocator
from .workers import WorkerHandle, create_workers

logger = logging.getLogger(__name__)


class SQLCluster:
    """Fans SQL work out to a pool of workers and gathers the results.

    Every worker holds one partition of each table. Table creation and drops
    go to all workers and succeed only if all of them do; there is no
    rollback for workers that already succeeded. Queries run on every worker
    and their batches are yielded in the order the workers finish.

    Use :meth:`init` (or :func:`open_cluster`) to build one::

        async with open_cluster(ClusterConfig(num_workers=4)) as cluster:
            await cluster.create_csv_table("trips", paths)
            async for batch in cluster.sql("SELECT count(*) FROM trips"):
                ...
    """

    def __init__(self, workers: Sequence[WorkerHandle], config: Optional[ClusterConfig] = None,
                 allocator: Optional[TokenAllocator] = None):
        self.config = config or ClusterConfig(num_workers=max(len(workers), 1))
        self._workers: List[WorkerHandle] = list(workers)
        self._killed: List[WorkerHandle] = []
        self._allocator = allocator or TokenAllocator()
        self.channel = Channel(self._workers)

    @classmethod
    async def init(cls, config: Optional[ClusterConfig] = None, *,
                   allocator: Optional[TokenAllocator] = None,
                   workers: Optional[Sequence[WorkerHandle]] = None) -> "SQLCluster":
        """Start the workers and create their SQL contexts.

        If anything fails on the way, every worker started so far is killed
        before the error propagates.
        """
        config = config or ClusterConfig()
        if workers is None:
            workers = create_workers(config)
        cluster = cls(workers, config, allocator)
        try:
            await cluster._fan_out(lambda w: w.start())
            await cluster._create_contexts()
        except BaseException:
            await cluster.close()
            raise
        logger.info(f"[Coordinator] Cluster ready with {len(cluster._workers)} workers")
        return cluster

    async def _create_contexts(self):
        peers = [PeerInfo(id=w.id, ip=self.config.ip, port=self.config.worker_port(w.id))
                 for w in self._workers]
        await self._fan_out(
            lambda w: w.create_context(ContextSettings.for_worker(self.config, w.id, peers)))

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def workers(self):
        return tuple(self._workers)

    @property
    def num_workers(self) -> int:
        return len(self._workers)

    @property
    def allocator(self) -> TokenAllocator:
        return self._allocator

    def _require_workers(self):
        if not self._workers:
            raise WorkerUnavailableError("cluster has no workers (killed?)")

    async def _fan_out(self, op: Callable[[WorkerHandle], "asyncio.Future"]) -> list:
        """Run ``op`` on every worker; wait for all, raise the first failure."""
        results = await asyncio.gather(*[op(w) for w in self._workers], return_exceptions=True)
        failed = [(w, r) for w, r in zip(self._workers, results) if isinstance(r, BaseException)]
        for worker, error in failed:
            logger.warning(f"[Coordinator] {worker.name} failed: {error!r}")
        if failed:
            raise failed[0][1]
        return results

    async def create_dataframe_table(self, table_name: str, table: pa.Table):
        """Split an in-memory table across the workers by row range.

        If a delivery or a registration fails, slices still waiting in the
        workers' mailboxes are discarded before the error propagates.
        """
        self._require_workers()
        token = self._allocator.next()
        try:
            refs = await self.channel.broadcast(token, table)
            ref_by_worker: Dict[int, str] = dict(zip((w.id for w in self._workers), refs))
            await self._fan_out(
                lambda w: w.create_table(table_name, TableSource.from_message(ref_by_worker[w.id])))
        except BaseException:
            await self.channel.discard(token)
            raise
        logger.info(f"[Coordinator] Created table {table_name} from {table.num_rows} rows")

    async def create_csv_table(self, table_name: str, file_paths: Sequence[str]):
        await self._create_file_table(table_name, file_paths, FileType.CSV)

    async def create_parquet_table(self, table_name: str, file_paths: Sequence[str]):
        await self._create_file_table(table_name, file_paths, FileType.PARQUET)

    async def create_orc_table(self, table_name: str, file_paths: Sequence[str]):
        await self._create_file_table(table_name, file_paths, FileType.ORC)

    async def create_file_table(self, table_name: str, file_paths: Sequence[str], file_type: FileType):
        await self._create_file_table(table_name, file_paths, FileType(file_type))

    async def _create_file_table(self, table_name: str, file_paths: Sequence[str], file_type: FileType):
        self._require_workers()
        paths = list(file_paths)
        schema = await asyncio.to_thread(parse_schema, paths, file_type)
        schema_b64 = schema_to_b64(schema)
        assignments = plan_assignments(paths, [w.id for w in self._workers])

        async def create(worker: WorkerHandle):
            chunk = assignments[worker.id]
            if chunk:
                await worker.create_table(table_name, TableSource.from_files(chunk, file_type, schema_b64))
                return
            # No files left for this worker: give it a zero-row table of the same schema.
            token = self._allocator.next()
            message_id = broadcast_message_id(token)
            try:
                await self.channel.send(worker.id, token, message_id, empty_table(schema))
                await worker.create_table(table_name, TableSource.from_message(message_id))
            except BaseException:
                await self.channel.discard(token, [worker.id])
                raise

        await self._fan_out(create)
        logger.info(f"[Coordinator] Created table {table_name} from {len(paths)} {file_type.value} files")

    async def drop_table(self, table_name: str):
        self._require_workers()
        await self._fan_out(lambda w: w.drop_table(table_name))
        logger.info(f"[Coordinator] Dropped table {table_name}")

    async def _statically_empty(self, query: str) -> bool:
        if not self.config.explain_before_dispatch:
            return False
        try:
            plan = await self._workers[0].explain(query)
        except ExecutionError as e:
            logger.debug(f"[Coordinator] Explain failed, dispatching anyway: {e}")
            return False
        return self.config.empty_plan_sentinel in plan

    async def sql(self, query: str) -> AsyncIterator[pa.RecordBatch]:
        """Run ``query`` on every worker and yield batches as workers finish.

        A worker failure is raised as soon as it is seen. Batches yielded
        before that are not taken back, so a failed query may have produced
        partial output.
        """
        self._require_workers()
        if await self._statically_empty(query):
            logger.debug(f"[Coordinator] Plan is empty, skipping dispatch: {query}")
            return
        token = self._allocator.next()
        pending = {asyncio.ensure_future(w.sql(query, token)): w for w in self._workers}
        logger.debug(f"[Coordinator] Query dispatched to {len(pending)} workers (token {token})")
        try:
            while pending:
                done, _ = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    worker = pending.pop(task)
                    batches = task.result()
                    logger.debug(f"[Coordinator] {worker.name} returned {len(batches)} batches (token {token})")
                    for batch in batches:
                        yield batch
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    async def sql_table(self, query: str) -> pa.Table:
        """Collect :meth:`sql` into a single table."""
        batches = [batch async for batch in self.sql(query)]
        if not batches:
            return pa.table({})
        return pa.concat_tables(
            [pa.Table.from_batches([b]) for b in batches], promote_options="default")

    async def list_tables(self) -> List[str]:
        self._require_workers()
        return await self._workers[0].list_tables()

    async def describe_table(self, table_name: str) -> Dict[str, str]:
        self._require_workers()
        return await self._workers[0].describe_table(table_name)

    async def explain(self, query: str, detail: bool = False) -> str:
        self._require_workers()
        return await self._workers[0].explain(query, detail)

    def status(self) -> List[WorkerStatus]:
        return [w.status() for w in self._workers + self._killed]

    def kill(self):
        """Kill every worker and forget them. Safe to call more than once."""
        for worker in self._workers:
            worker.kill()
        self._killed.extend(self._workers)
        self._workers.clear()

    async def close(self):
        self.kill()
        await asyncio.gather(*[w.join() for w in self._killed], return_exceptions=True)


@asynccontextmanager
async def open_cluster(config: Optional[ClusterConfig] = None, *,
                       allocator: Optional[TokenAllocator] = None,
                       workers: Optional[Sequence[WorkerHandle]] = None):
    """Cluster whose workers are killed however the block exits."""
    cluster = await SQLCluster.init(config, allocator=allocator, workers=workers)
    try:
        yield cluster
    finally:
        await cluster.close()
