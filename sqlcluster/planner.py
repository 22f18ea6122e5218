"""Splitting work across workers.

Workers are visited in a fixed order. The i-th visit (counting down from n
to 1) takes ``ceil(remaining / i)`` items off the front of what is left, so
assignment sizes never increase along the iteration and every item lands in
exactly one assignment. With fewer items than workers the trailing workers
get empty lists; they still take part in the operation and receive a zero-row
table of the full schema instead of files.
"""
import math
from typing import Dict, List, Sequence, Tuple, TypeVar

import pyarrow as pa

T = TypeVar("T")

WorkAssignment = Dict[int, List[T]]


def _sizes(total: int, n: int) -> List[int]:
    if n < 1:
        raise ValueError(f"need at least one worker, got {n}")
    sizes = []
    remaining = total
    for i in range(n, 0, -1):
        take = math.ceil(remaining / i)
        sizes.append(take)
        remaining -= take
    return sizes


def partition(items: Sequence[T], n: int) -> List[List[T]]:
    chunks = []
    start = 0
    for size in _sizes(len(items), n):
        chunks.append(list(items[start:start + size]))
        start += size
    return chunks


def partition_rows(num_rows: int, n: int) -> List[Tuple[int, int]]:
    """Same split as :func:`partition`, as ``(offset, length)`` row ranges."""
    ranges = []
    offset = 0
    for size in _sizes(num_rows, n):
        ranges.append((offset, size))
        offset += size
    return ranges


def plan_assignments(items: Sequence[T], worker_ids: Sequence[int]) -> WorkAssignment:
    return dict(zip(worker_ids, partition(items, len(worker_ids))))


def empty_table(schema: pa.Schema) -> pa.Table:
    return schema.empty_table()
