import asyncio
import logging
import threading
from typing import Dict, List, Optional, Sequence, Tuple

import pyarrow as pa

from .errors import ReferenceNotFoundError, WorkerUnavailableError
from .planner import partition_rows

logger = logging.getLogger(__name__)


def broadcast_message_id(token: int, worker_id: int = None) -> str:
    if worker_id is None:
        return f"broadcast_table_message_{token}"
    return f"broadcast_table_message_{token}_{worker_id}"


class Mailbox:
    """Payloads delivered to one worker, waiting to be pulled.

    A message can be pulled once. Pulling an unknown or already pulled id
    raises ReferenceNotFoundError.
    """

    def __init__(self):
        self._messages: Dict[str, Tuple[int, pa.Table]] = {}
        self._lock = threading.Lock()

    def put(self, message_id: str, token: int, table: pa.Table):
        with self._lock:
            self._messages[message_id] = (token, table)

    def pull(self, message_id: str) -> pa.Table:
        with self._lock:
            try:
                _, table = self._messages.pop(message_id)
            except KeyError:
                raise ReferenceNotFoundError(f"no message {message_id!r}") from None
        return table

    def expire(self, token: int) -> int:
        with self._lock:
            stale = [m for m, (t, _) in self._messages.items() if t == token]
            for message_id in stale:
                del self._messages[message_id]
        return len(stale)

    def clear(self):
        with self._lock:
            self._messages.clear()

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._messages

    def __len__(self) -> int:
        return len(self._messages)


class Channel:
    """Moves Arrow tables from the coordinator into worker mailboxes.

    Both ``send`` and ``broadcast`` return only after every target worker
    acknowledged the delivery, so a worker told to pull afterwards always
    finds its message.
    """

    def __init__(self, workers: Sequence):
        self._workers = {w.id: w for w in workers}

    def _target(self, worker_id: int):
        try:
            return self._workers[worker_id]
        except KeyError:
            raise WorkerUnavailableError(f"no worker {worker_id} on this channel") from None

    async def send(self, target_id: int, token: int, message_id: str, table: pa.Table):
        worker = self._target(target_id)
        await worker.deliver(message_id, token, table)
        logger.debug(f"[Channel] Sent {table.num_rows} rows to worker {target_id} as {message_id}")

    async def broadcast(self, token: int, table: pa.Table) -> List[str]:
        """Split ``table`` into row ranges, one per worker, and deliver them.

        Returns the message id each worker pulls its slice with, in worker
        order. Workers whose range is empty still get a zero-row slice.
        """
        workers = list(self._workers.values())
        ranges = partition_rows(table.num_rows, len(workers))
        refs = [broadcast_message_id(token, w.id) for w in workers]
        results = await asyncio.gather(*[
            w.deliver(ref, token, table.slice(offset, length))
            for w, ref, (offset, length) in zip(workers, refs, ranges)
        ], return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        logger.debug(f"[Channel] Broadcast {table.num_rows} rows to {len(workers)} workers (token {token})")
        return refs

    async def discard(self, token: int, worker_ids: Optional[Sequence[int]] = None):
        """Drop whatever is still waiting under ``token`` on the given workers.

        Workers that cannot be reached are skipped; their mailboxes go away
        with them.
        """
        if worker_ids is None:
            targets = list(self._workers.values())
        else:
            targets = [self._workers[i] for i in worker_ids if i in self._workers]
        results = await asyncio.gather(*[w.discard(token) for w in targets], return_exceptions=True)
        for worker, result in zip(targets, results):
            if isinstance(result, BaseException):
                logger.debug(f"[Channel] Could not discard token {token} on {worker.name}: {result!r}")
            elif result:
                logger.debug(f"[Channel] Discarded {result} messages on {worker.name} (token {token})")
