import logging
import threading
from contextlib import contextmanager
from typing import Dict, List, Optional, Sequence

import duckdb
import pyarrow as pa

from .arrow_io import schema_from_b64
from .channel import Mailbox
from .errors import DuplicateTableError, ExecutionError, NotFoundError, WorkerUnavailableError
from .models import AllocationMode, ContextSettings, FileType, TableSource
from .sources import conform, read_files

logger = logging.getLogger(__name__)


def _literal(value) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


class SQLContext:
    """One worker's tables and its embedded DuckDB engine.

    DuckDB connections must not be used from two threads at once, so every
    engine call holds ``_lock``. ``close()`` may be called from any thread;
    if a query is running it is interrupted and the connection is closed
    as soon as that query returns.
    """

    def __init__(self, settings: ContextSettings):
        self.id = settings.id
        self.settings = settings
        self._tables: Dict[str, pa.Table] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._close_pending = False
        self._con = duckdb.connect(":memory:")
        self._configure(settings)
        logger.debug(f"[worker-{self.id}] SQL context ready ({len(settings.peers)} peers)")

    def _configure(self, settings: ContextSettings):
        options = {}
        if settings.allocation_mode == AllocationMode.BOUNDED:
            options["memory_limit"] = settings.maximum_pool_size
        if settings.threads:
            options["threads"] = settings.threads
        options.update(settings.config_options)
        for key, value in options.items():
            try:
                self._con.execute(f"SET {key} = {_literal(value)}")
            except duckdb.Error as e:
                self._con.close()
                raise ExecutionError(f"bad engine option {key}={value!r}: {e}") from e

    @contextmanager
    def _session(self):
        with self._lock:
            if self._closed:
                raise WorkerUnavailableError(f"SQL context of worker {self.id} is closed")
            try:
                yield self._con
            finally:
                if self._close_pending:
                    self._close_now()

    def _close_now(self):
        if not self._closed:
            self._closed = True
            self._tables.clear()
            self._con.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def create_table(self, name: str, table: pa.Table):
        with self._session() as con:
            if name in self._tables:
                raise DuplicateTableError(f"table {name!r} already exists on worker {self.id}")
            con.register(name, table)
            self._tables[name] = table
        logger.debug(f"[worker-{self.id}] Created table {name} ({table.num_rows} rows)")

    def create_file_table(self, name: str, paths: Sequence[str], file_type: FileType,
                          schema: Optional[pa.Schema] = None):
        if name in self._tables:
            raise DuplicateTableError(f"table {name!r} already exists on worker {self.id}")
        table = read_files(paths, file_type, schema)
        self.create_table(name, table)

    def create_table_from(self, name: str, source: TableSource, mailbox: Mailbox):
        """Register ``name`` from a channel message or from this worker's files."""
        schema = schema_from_b64(source.schema_b64) if source.schema_b64 else None
        if source.message_id is None:
            self.create_file_table(name, source.paths, source.file_type, schema)
            return
        table = mailbox.pull(source.message_id)
        if schema is not None:
            table = conform(table, schema, origin=f"table {name!r}")
        self.create_table(name, table)

    def drop_table(self, name: str):
        with self._session() as con:
            if name not in self._tables:
                raise NotFoundError(f"no table {name!r} on worker {self.id}")
            con.unregister(name)
            del self._tables[name]
        logger.debug(f"[worker-{self.id}] Dropped table {name}")

    def list_tables(self) -> List[str]:
        return sorted(self._tables)

    def describe_table(self, name: str) -> Dict[str, str]:
        try:
            table = self._tables[name]
        except KeyError:
            raise NotFoundError(f"no table {name!r} on worker {self.id}") from None
        return {field.name: str(field.type) for field in table.schema}

    def num_rows(self, name: str) -> int:
        try:
            return self._tables[name].num_rows
        except KeyError:
            raise NotFoundError(f"no table {name!r} on worker {self.id}") from None

    def explain(self, query: str, detail: bool = False) -> str:
        """Plan text for ``query``; ``detail`` adds the physical plan."""
        with self._session() as con:
            try:
                con.execute(f"SET explain_output = '{'all' if detail else 'optimized_only'}'")
                rows = con.execute(f"EXPLAIN {query}").fetchall()
            except duckdb.Error as e:
                raise ExecutionError(str(e)) from e
        return "\n".join(str(row[1]) for row in rows)

    def sql(self, query: str) -> List[pa.RecordBatch]:
        with self._session() as con:
            try:
                result = con.execute(query).fetch_arrow_table()
            except duckdb.Error as e:
                if self._close_pending:
                    raise WorkerUnavailableError(f"worker {self.id} was killed mid-query") from e
                raise ExecutionError(str(e)) from e
        return [batch for batch in result.to_batches() if batch.num_rows > 0]

    def interrupt(self):
        if not self._closed:
            self._con.interrupt()

    def close(self):
        if self._lock.acquire(blocking=False):
            try:
                self._close_now()
            finally:
                self._lock.release()
        else:
            self._close_pending = True
            self.interrupt()
