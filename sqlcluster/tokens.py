import threading


class TokenAllocator:
    """Hands out context tokens for one coordinator.

    Tokens are strictly increasing. Two callers never get the same value, even
    from different threads.
    """

    def __init__(self, start: int = 0):
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            token = self._next
            self._next += 1
            return token

    def peek(self) -> int:
        with self._lock:
            return self._next
