"""Pytest configuration for sqlcluster tests."""

import asyncio
from typing import Dict, List, Optional

import pytest
import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from sqlcluster.errors import NotFoundError, ReferenceNotFoundError
from sqlcluster.models import ContextSettings, TableSource
from sqlcluster.workers import WorkerHandle


class FakeWorker(WorkerHandle):
    """Scripted worker for coordinator tests; records every call."""

    kind = "fake"

    def __init__(self, worker_id: int, batches=(), delay: float = 0.0, hang: bool = False,
                 sql_error: Optional[Exception] = None, create_error: Optional[Exception] = None,
                 start_error: Optional[Exception] = None, plan: str = "PROJECTION", explain_error=None,
                 query_timeout: Optional[float] = None, deliver_error: Optional[Exception] = None):
        super().__init__(worker_id, query_timeout)
        self.batches = list(batches)
        self.delay = delay
        self.hang = hang
        self.sql_error = sql_error
        self.create_error = create_error
        self.start_error = start_error
        self.plan = plan
        self.explain_error = explain_error
        self.deliver_error = deliver_error
        self.sql_calls = 0
        self.tokens: List[int] = []
        self.settings: Optional[ContextSettings] = None
        self.tables: Dict[str, TableSource] = {}
        self.pulled: Dict[str, pa.Table] = {}
        self.mailbox: Dict[str, tuple] = {}
        self.terminated = False

    async def start(self):
        if self.start_error is not None:
            raise self.start_error

    async def _create_context(self, settings):
        self.settings = settings

    async def _create_table(self, name, source):
        if self.create_error is not None:
            raise self.create_error
        if source.message_id is not None:
            if source.message_id not in self.mailbox:
                raise ReferenceNotFoundError(source.message_id)
            self.pulled[name] = self.mailbox.pop(source.message_id)[1]
        self.tables[name] = source

    async def _drop_table(self, name):
        if name not in self.tables:
            raise NotFoundError(name)
        del self.tables[name]

    async def _sql(self, query, token):
        self.sql_calls += 1
        self.tokens.append(token)
        await asyncio.sleep(self.delay)
        if self.hang:
            await asyncio.Event().wait()
        if self.sql_error is not None:
            raise self.sql_error
        return list(self.batches)

    async def _explain(self, query, detail):
        if self.explain_error is not None:
            raise self.explain_error
        return self.plan

    async def _list_tables(self):
        return sorted(self.tables)

    async def _describe_table(self, name):
        if name not in self.tables:
            raise NotFoundError(name)
        return {}

    async def _deliver(self, message_id, token, table):
        if self.deliver_error is not None:
            raise self.deliver_error
        self.mailbox[message_id] = (token, table)

    async def _discard(self, token):
        stale = [m for m, (t, _) in self.mailbox.items() if t == token]
        for message_id in stale:
            del self.mailbox[message_id]
        return len(stale)

    def _terminate(self):
        self.terminated = True


def marker_batch(value: int) -> pa.RecordBatch:
    return pa.RecordBatch.from_pydict({"worker": [value]})


@pytest.fixture
def sample_table():
    return pa.table({
        "id": pa.array(range(10), type=pa.int64()),
        "city": ["Lyon", "Paris", "Nice", "Lyon", "Paris", "Nice", "Lyon", "Paris", "Nice", "Lyon"],
        "fare": [3.5, 12.0, 7.25, 4.0, 9.5, 15.0, 2.75, 11.0, 6.0, 8.5],
    })


@pytest.fixture
def csv_files(tmp_path, sample_table):
    """Two CSV files splitting the sample table 6/4."""
    paths = []
    for i, (offset, length) in enumerate([(0, 6), (6, 4)]):
        path = tmp_path / f"trips_{i}.csv"
        pacsv.write_csv(sample_table.slice(offset, length), str(path))
        paths.append(str(path))
    return paths


@pytest.fixture
def parquet_files(tmp_path, sample_table):
    paths = []
    for i in range(5):
        path = tmp_path / f"trips_{i}.parquet"
        pq.write_table(sample_table.slice(i * 2, 2), str(path))
        paths.append(str(path))
    return paths
