import os
import logging
from typing import List, Optional, Sequence

import pyarrow as pa
import pyarrow.csv as pacsv
import pyarrow.parquet as pq

from .errors import NotFoundError, SchemaMismatchError
from .models import FileType

logger = logging.getLogger(__name__)


def _check_exists(path: str):
    if not os.path.exists(path):
        raise NotFoundError(f"source file not found: {path}")


def read_schema(path: str, file_type: FileType) -> pa.Schema:
    _check_exists(path)
    file_type = FileType(file_type)
    if file_type == FileType.CSV:
        with open(path, "rb") as f:
            return pacsv.open_csv(f).schema
    if file_type == FileType.PARQUET:
        return pq.read_schema(path)
    from pyarrow import orc
    return orc.ORCFile(path).schema


def read_file(path: str, file_type: FileType) -> pa.Table:
    _check_exists(path)
    file_type = FileType(file_type)
    if file_type == FileType.CSV:
        return pacsv.read_csv(path)
    if file_type == FileType.PARQUET:
        return pq.read_table(path)
    from pyarrow import orc
    return orc.read_table(path)


def parse_schema(paths: Sequence[str], file_type: FileType) -> pa.Schema:
    """Schema of the whole, unsplit source.

    Every file must have the same column names; types are unified across
    files (a column that is all-null in one file takes the type from another).
    """
    if not paths:
        raise ValueError("parse_schema needs at least one path")
    schemas = [read_schema(p, file_type) for p in paths]
    first = schemas[0]
    for path, schema in zip(paths[1:], schemas[1:]):
        if sorted(schema.names) != sorted(first.names):
            raise SchemaMismatchError(
                f"{path} has columns {schema.names}, expected {first.names}")
    try:
        unified = pa.unify_schemas(schemas)
    except (pa.ArrowInvalid, pa.ArrowTypeError) as e:
        raise SchemaMismatchError(str(e)) from e
    logger.debug(f"[Planner] Parsed schema of {len(paths)} {FileType(file_type).value} files: {unified.names}")
    return unified


def conform(table: pa.Table, schema: pa.Schema, origin: str = "table") -> pa.Table:
    """Reorder and cast ``table`` to ``schema`` or raise SchemaMismatchError."""
    if sorted(table.schema.names) != sorted(schema.names):
        raise SchemaMismatchError(
            f"{origin} has columns {table.schema.names}, expected {schema.names}")
    try:
        return table.select(schema.names).cast(schema)
    except (pa.ArrowInvalid, pa.ArrowNotImplementedError, pa.ArrowTypeError) as e:
        raise SchemaMismatchError(f"{origin}: {e}") from e


def read_files(paths: Sequence[str], file_type: FileType, schema: Optional[pa.Schema] = None) -> pa.Table:
    """Read and concatenate one worker's share of a file source."""
    tables: List[pa.Table] = []
    for path in paths:
        table = read_file(path, file_type)
        if schema is None:
            schema = table.schema
        tables.append(conform(table, schema, origin=path))
    if not tables:
        if schema is None:
            raise ValueError("read_files needs paths or a schema")
        return schema.empty_table()
    return pa.concat_tables(tables)
