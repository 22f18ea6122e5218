from typing import Dict, Type


class ClusterError(Exception):
    """Base class for every failure the cluster reports to callers."""

    code = "cluster_error"
    status_code = 500

    def __init__(self, detail: str = ""):
        super().__init__(detail)
        self.detail = detail


class WorkerUnavailableError(ClusterError):
    """The worker was killed, never started, or cannot be reached."""

    code = "worker_unavailable"
    status_code = 503


class DuplicateTableError(ClusterError):
    code = "duplicate_table"
    status_code = 409


class NotFoundError(ClusterError):
    code = "not_found"
    status_code = 404


class ReferenceNotFoundError(NotFoundError):
    """A channel pull named a message that was never delivered or was already consumed."""

    code = "reference_not_found"


class SchemaMismatchError(ClusterError):
    code = "schema_mismatch"
    status_code = 422


class ExecutionError(ClusterError):
    code = "execution_error"
    status_code = 400


_BY_CODE: Dict[str, Type[ClusterError]] = {
    cls.code: cls
    for cls in (
        ClusterError,
        WorkerUnavailableError,
        DuplicateTableError,
        NotFoundError,
        ReferenceNotFoundError,
        SchemaMismatchError,
        ExecutionError,
    )
}


def error_from_payload(code: str, detail: str) -> ClusterError:
    """Rebuild the exception a worker reported over HTTP."""
    return _BY_CODE.get(code, ClusterError)(detail)
