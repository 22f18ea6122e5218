import base64
from typing import List, Iterable, Tuple

import pyarrow as pa

ARROW_STREAM = "application/vnd.apache.arrow.stream"


def batches_to_ipc(schema: pa.Schema, batches: Iterable[pa.RecordBatch]) -> bytes:
    sink = pa.BufferOutputStream()
    with pa.ipc.new_stream(sink, schema) as writer:
        for batch in batches:
            writer.write_batch(batch)
    return sink.getvalue().to_pybytes()


def ipc_to_batches(data: bytes) -> Tuple[pa.Schema, List[pa.RecordBatch]]:
    reader = pa.ipc.open_stream(pa.py_buffer(data))
    return reader.schema, list(reader)


def table_to_ipc(table: pa.Table) -> bytes:
    return batches_to_ipc(table.schema, table.to_batches())


def ipc_to_table(data: bytes) -> pa.Table:
    schema, batches = ipc_to_batches(data)
    return pa.Table.from_batches(batches, schema=schema)


def schema_to_b64(schema: pa.Schema) -> str:
    return base64.b64encode(schema.serialize().to_pybytes()).decode("ascii")


def schema_from_b64(data: str) -> pa.Schema:
    return pa.ipc.read_schema(pa.py_buffer(base64.b64decode(data)))
