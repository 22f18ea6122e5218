"""Tests for worker handles: lifecycle, kill semantics and the in-process worker."""

import asyncio

import pytest
import pyarrow as pa

from sqlcluster.errors import DuplicateTableError, WorkerUnavailableError
from sqlcluster.models import ClusterConfig, ContextSettings, TableSource, WorkerMode, WorkerState
from sqlcluster.workers import LocalWorker, RemoteWorker, create_workers

from tests.conftest import FakeWorker, marker_batch


async def ready(worker):
    await worker.create_context(ContextSettings(id=worker.id))
    return worker


@pytest.mark.asyncio
async def test_lifecycle_states():
    worker = FakeWorker(0)
    assert worker.state == WorkerState.STARTING
    await ready(worker)
    assert worker.state == WorkerState.READY
    worker.kill()
    assert worker.state == WorkerState.TERMINATED
    assert worker.terminated


@pytest.mark.asyncio
async def test_calls_before_context_fail():
    with pytest.raises(WorkerUnavailableError):
        await FakeWorker(0).sql("SELECT 1", 0)


@pytest.mark.asyncio
async def test_calls_after_kill_fail():
    worker = await ready(FakeWorker(0, batches=[marker_batch(0)]))
    worker.kill()
    worker.kill()
    with pytest.raises(WorkerUnavailableError):
        await worker.sql("SELECT 1", 0)
    assert worker.sql_calls == 0


@pytest.mark.asyncio
async def test_kill_resolves_pending_call():
    worker = await ready(FakeWorker(0, hang=True))
    call = asyncio.ensure_future(worker.sql("SELECT 1", 0))
    await asyncio.sleep(0.05)
    assert not call.done()
    worker.kill()
    with pytest.raises(WorkerUnavailableError):
        await asyncio.wait_for(call, timeout=1.0)


@pytest.mark.asyncio
async def test_query_timeout():
    worker = await ready(FakeWorker(0, hang=True, query_timeout=0.05))
    with pytest.raises(WorkerUnavailableError):
        await asyncio.wait_for(worker.sql("SELECT 1", 0), timeout=1.0)
    assert worker.state == WorkerState.READY


@pytest.mark.asyncio
async def test_local_worker_round_trip(sample_table):
    worker = await ready(LocalWorker(0))
    try:
        await worker.deliver("broadcast_table_message_0_0", 0, sample_table)
        await worker.create_table("trips", TableSource.from_message("broadcast_table_message_0_0"))
        assert await worker.list_tables() == ["trips"]
        batches = await worker.sql("SELECT count(*) AS n FROM trips", 1)
        assert pa.Table.from_batches(batches).column("n").to_pylist() == [10]

        await worker.deliver("broadcast_table_message_2", 2, sample_table)
        with pytest.raises(DuplicateTableError):
            await worker.create_table("trips", TableSource.from_message("broadcast_table_message_2"))

        await worker.drop_table("trips")
        assert await worker.list_tables() == []
    finally:
        worker.kill()
    assert worker.context.closed


def test_create_local_workers():
    workers = create_workers(ClusterConfig(num_workers=3, worker_mode=WorkerMode.LOCAL))
    assert [type(w) for w in workers] == [LocalWorker] * 3
    assert [w.id for w in workers] == [0, 1, 2]


def test_create_mixed_workers():
    config = ClusterConfig(num_workers=3, port=5000, devices=("7", "8"), device_env_var="GPU_ID")
    workers = create_workers(config)
    assert isinstance(workers[0], LocalWorker)
    assert all(isinstance(w, RemoteWorker) for w in workers[1:])
    assert [w.port for w in workers[1:]] == [5001, 5002]
    assert [w.env["GPU_ID"] for w in workers[1:]] == ["8", "7"]
    assert workers[1].base_url == "http://127.0.0.1:5001"


def test_create_remote_workers():
    workers = create_workers(ClusterConfig(num_workers=2, worker_mode="remote", ip="0.0.0.0"))
    assert all(isinstance(w, RemoteWorker) for w in workers)
    assert workers[0].base_url == "http://127.0.0.1:4000"
    assert workers[0].env["CUDA_VISIBLE_DEVICES"] == "0"


@pytest.mark.asyncio
async def test_remote_worker_unreachable():
    worker = RemoteWorker(1, host="127.0.0.1", port=1, request_timeout=1.0)
    worker.state = WorkerState.READY
    with pytest.raises(WorkerUnavailableError):
        await worker.list_tables()


@pytest.mark.asyncio
async def test_local_worker_discard(sample_table):
    worker = await ready(LocalWorker(0))
    try:
        await worker.deliver("broadcast_table_message_3_0", 3, sample_table)
        await worker.deliver("broadcast_table_message_4", 4, sample_table)
        assert await worker.discard(3) == 1
        assert await worker.discard(3) == 0
        assert "broadcast_table_message_4" in worker.mailbox
    finally:
        worker.kill()


@pytest.mark.asyncio
async def test_local_worker_recovers_after_timeout():
    worker = await ready(LocalWorker(0, query_timeout=0.5))
    try:
        with pytest.raises(WorkerUnavailableError):
            await worker.sql("SELECT sum(i * i) AS s FROM range(3000000000) t(i)", 0)
        batches = await worker.sql("SELECT 42 AS answer", 1)
        assert pa.Table.from_batches(batches).column("answer").to_pylist() == [42]
    finally:
        worker.kill()
