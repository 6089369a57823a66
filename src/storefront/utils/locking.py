"""Per-key in-process mutexes.

Serializes mutations of one product's stock, one order's payment state or
one user's checkout without a global lock. Keys are namespaced strings such
as ``product:<id>`` or ``order:<id>``. Several keys are always acquired in
sorted order so that two callers locking overlapping key sets cannot
deadlock. Locks are re-entrant: a coordinator holding ``product:x`` may call
the reservation manager, which takes ``product:x`` again.

Never hold a key across an outbound gateway call.
"""

import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager


class KeyedLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: str) -> Iterator[None]:
        """Hold every given key for the duration of the block."""
        ordered = sorted(set(keys))
        acquired: list[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def clear(self) -> None:
        with self._guard:
            self._locks.clear()


def product_key(product_id) -> str:
    return f"product:{product_id}"


def order_key(order_id) -> str:
    return f"order:{order_id}"


def user_key(user_id) -> str:
    return f"user:{user_id}"


def product_keys(product_ids: Iterable) -> list[str]:
    return [product_key(product_id) for product_id in product_ids]


locks = KeyedLock()
