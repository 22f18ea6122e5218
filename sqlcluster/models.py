import os
from enum import Enum
from typing import List, Any, Optional, Dict, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

DEFAULT_PORT = 4000
STARTUP_TIMEOUT = 30.0
REQUEST_TIMEOUT = 300.0
EMPTY_PLAN_SENTINEL = "EMPTY_RESULT"


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    TERMINATED = "terminated"


class FileType(str, Enum):
    CSV = "csv"
    PARQUET = "parquet"
    ORC = "orc"


class AllocationMode(str, Enum):
    DEFAULT = "default"
    BOUNDED = "bounded"


class WorkerMode(str, Enum):
    MIXED = "mixed"    # worker 0 in-process, the rest subprocesses
    LOCAL = "local"
    REMOTE = "remote"


class ClusterConfig(BaseModel):
    """Topology snapshot taken once when a cluster is initialized.

    Topology changes require a new cluster; assigning to a field raises.
    """

    model_config = ConfigDict(frozen=True)

    num_workers: int = Field(default=1, ge=1)
    ip: str = "127.0.0.1"
    port: int = DEFAULT_PORT
    worker_mode: WorkerMode = WorkerMode.MIXED
    devices: Optional[Tuple[str, ...]] = None
    device_env_var: str = "CUDA_VISIBLE_DEVICES"
    allocation_mode: AllocationMode = AllocationMode.DEFAULT
    maximum_pool_size: Optional[str] = None
    threads_per_worker: Optional[int] = Field(default=None, ge=1)
    enable_logging: bool = False
    config_options: Dict[str, Any] = Field(default_factory=dict)
    startup_timeout: float = STARTUP_TIMEOUT
    request_timeout: float = REQUEST_TIMEOUT
    query_timeout: Optional[float] = None
    explain_before_dispatch: bool = True
    empty_plan_sentinel: str = EMPTY_PLAN_SENTINEL

    @model_validator(mode="after")
    def _check_pool_size(self):
        if self.allocation_mode == AllocationMode.BOUNDED and not self.maximum_pool_size:
            raise ValueError("bounded allocation needs maximum_pool_size")
        return self

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "ClusterConfig":
        """Build a config from ``SQLCLUSTER_*`` environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        simple = {
            "SQLCLUSTER_NUM_WORKERS": "num_workers",
            "SQLCLUSTER_IP": "ip",
            "SQLCLUSTER_PORT": "port",
            "SQLCLUSTER_WORKER_MODE": "worker_mode",
            "SQLCLUSTER_DEVICE_ENV_VAR": "device_env_var",
            "SQLCLUSTER_ALLOCATION_MODE": "allocation_mode",
            "SQLCLUSTER_MAXIMUM_POOL_SIZE": "maximum_pool_size",
            "SQLCLUSTER_THREADS_PER_WORKER": "threads_per_worker",
            "SQLCLUSTER_STARTUP_TIMEOUT": "startup_timeout",
            "SQLCLUSTER_REQUEST_TIMEOUT": "request_timeout",
            "SQLCLUSTER_QUERY_TIMEOUT": "query_timeout",
            "SQLCLUSTER_EMPTY_PLAN_SENTINEL": "empty_plan_sentinel",
        }
        for var, field in simple.items():
            if env.get(var):
                values[field] = env[var]
        if env.get("SQLCLUSTER_DEVICES"):
            values["devices"] = tuple(d.strip() for d in env["SQLCLUSTER_DEVICES"].split(",") if d.strip())
        for var, field in (("SQLCLUSTER_ENABLE_LOGGING", "enable_logging"),
                           ("SQLCLUSTER_EXPLAIN_BEFORE_DISPATCH", "explain_before_dispatch")):
            if env.get(var):
                values[field] = env[var].lower() in ("1", "true", "yes", "on")
        values.update(overrides)
        return cls(**values)

    def worker_port(self, worker_id: int) -> int:
        return self.port + worker_id

    def device_for(self, worker_id: int) -> str:
        if self.devices:
            return self.devices[worker_id % len(self.devices)]
        return str(worker_id)


class PeerInfo(BaseModel):
    id: int
    ip: str
    port: int


class ContextSettings(BaseModel):
    """What each worker needs to build its SQL context."""

    id: int
    peers: List[PeerInfo] = Field(default_factory=list)
    allocation_mode: AllocationMode = AllocationMode.DEFAULT
    maximum_pool_size: Optional[str] = None
    threads: Optional[int] = None
    enable_logging: bool = False
    config_options: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def for_worker(cls, config: ClusterConfig, worker_id: int, peers: List[PeerInfo]) -> "ContextSettings":
        return cls(
            id=worker_id,
            peers=peers,
            allocation_mode=config.allocation_mode,
            maximum_pool_size=config.maximum_pool_size,
            threads=config.threads_per_worker,
            enable_logging=config.enable_logging,
            config_options=dict(config.config_options),
        )


class TableSource(BaseModel):
    """Where a worker gets its partition of a table from.

    Either a channel reference (``message_id``) or a list of files that the
    worker parses itself. ``schema_b64`` optionally carries the target schema
    every worker must cast its partition to.
    """

    message_id: Optional[str] = None
    paths: List[str] = Field(default_factory=list)
    file_type: Optional[FileType] = None
    schema_b64: Optional[str] = None

    @model_validator(mode="after")
    def _one_form(self):
        if self.message_id is not None:
            if self.paths or self.file_type is not None:
                raise ValueError("a table source is either a message or a file list, not both")
        elif not self.paths or self.file_type is None:
            raise ValueError("a file table source needs paths and file_type")
        return self

    @classmethod
    def from_message(cls, message_id: str) -> "TableSource":
        return cls(message_id=message_id)

    @classmethod
    def from_files(cls, paths: List[str], file_type: FileType, schema_b64: Optional[str] = None) -> "TableSource":
        return cls(paths=list(paths), file_type=FileType(file_type), schema_b64=schema_b64)


class CreateTableRequest(BaseModel):
    name: str
    source: TableSource


class SqlRequest(BaseModel):
    query: str
    token: int


class ExplainRequest(BaseModel):
    query: str
    detail: bool = False


class ExplainResponse(BaseModel):
    plan: str


class FileTableRequest(BaseModel):
    paths: List[str]
    file_type: FileType = FileType.CSV


class QueryRequest(BaseModel):
    query: str


class ErrorResponse(BaseModel):
    error: str
    detail: str


class WorkerStatus(BaseModel):
    worker_id: int
    kind: str
    state: WorkerState
    port: Optional[int] = None
