"""Tests for a worker's SQL context."""

import pytest
import pyarrow as pa

from sqlcluster.arrow_io import schema_to_b64
from sqlcluster.channel import Mailbox
from sqlcluster.context import SQLContext
from sqlcluster.errors import (
    DuplicateTableError, ExecutionError, NotFoundError, ReferenceNotFoundError,
    SchemaMismatchError, WorkerUnavailableError,
)
from sqlcluster.models import AllocationMode, ContextSettings, FileType, TableSource


@pytest.fixture
def ctx():
    context = SQLContext(ContextSettings(id=1))
    yield context
    context.close()


def test_create_and_query(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    batches = ctx.sql("SELECT city, count(*) AS n FROM trips GROUP BY city ORDER BY city")
    result = pa.Table.from_batches(batches).to_pydict()
    assert result == {"city": ["Lyon", "Nice", "Paris"], "n": [4, 3, 3]}


def test_empty_result_has_no_batches(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    assert ctx.sql("SELECT * FROM trips WHERE fare > 1000") == []


def test_duplicate_table(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    with pytest.raises(DuplicateTableError):
        ctx.create_table("trips", sample_table)


def test_drop_table(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    ctx.drop_table("trips")
    assert ctx.list_tables() == []
    with pytest.raises(NotFoundError):
        ctx.drop_table("trips")


def test_describe_table(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    assert ctx.describe_table("trips") == {"id": "int64", "city": "string", "fare": "double"}
    with pytest.raises(NotFoundError):
        ctx.describe_table("nope")


def test_bad_query(ctx):
    with pytest.raises(ExecutionError):
        ctx.sql("SELEC oops")


def test_explain_mentions_table(ctx, sample_table):
    ctx.create_table("trips", sample_table)
    plan = ctx.explain("SELECT id FROM trips WHERE fare > 5")
    assert isinstance(plan, str) and plan


def test_closed_context(sample_table):
    context = SQLContext(ContextSettings(id=2))
    context.close()
    assert context.closed
    with pytest.raises(WorkerUnavailableError):
        context.create_table("trips", sample_table)
    context.close()


def test_engine_options_are_applied():
    context = SQLContext(ContextSettings(id=3, threads=2, config_options={"default_order": "desc"}))
    try:
        rows = context.sql("SELECT current_setting('threads') AS t, current_setting('default_order') AS o")
        values = pa.Table.from_batches(rows).to_pylist()[0]
        assert int(values["t"]) == 2
        assert values["o"].lower() == "desc"
    finally:
        context.close()


def test_bounded_allocation():
    context = SQLContext(ContextSettings(
        id=4, allocation_mode=AllocationMode.BOUNDED, maximum_pool_size="512MB"))
    try:
        rows = context.sql("SELECT current_setting('memory_limit') AS m")
        assert pa.Table.from_batches(rows).column("m")[0].as_py()
    finally:
        context.close()


def test_bad_engine_option():
    with pytest.raises(ExecutionError):
        SQLContext(ContextSettings(id=5, config_options={"no_such_setting": 1}))


def test_create_from_message(ctx, sample_table):
    box = Mailbox()
    box.put("broadcast_table_message_0_1", 0, sample_table)
    ctx.create_table_from("trips", TableSource.from_message("broadcast_table_message_0_1"), box)
    assert ctx.num_rows("trips") == 10
    with pytest.raises(ReferenceNotFoundError):
        ctx.create_table_from("again", TableSource.from_message("broadcast_table_message_0_1"), box)


def test_create_from_files_casts_to_schema(ctx, csv_files):
    schema = pa.schema([("id", pa.float64()), ("city", pa.string()), ("fare", pa.float64())])
    source = TableSource.from_files(csv_files[:1], FileType.CSV, schema_to_b64(schema))
    ctx.create_table_from("trips", source, Mailbox())
    assert ctx.describe_table("trips")["id"] == "double"
    assert ctx.num_rows("trips") == 6


def test_create_from_files_schema_mismatch(ctx, csv_files):
    schema = pa.schema([("other", pa.int64())])
    source = TableSource.from_files(csv_files, FileType.CSV, schema_to_b64(schema))
    with pytest.raises(SchemaMismatchError):
        ctx.create_table_from("trips", source, Mailbox())
