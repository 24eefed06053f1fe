"""Shared pool of part-sized byte buffers.

Writers borrow two buffers each for the lifetime of an upload. Buffers are
fungible once zeroed, so the pool is a plain free list guarded by a lock.
"""

from __future__ import annotations

import threading


class PartBufferPool:
    """Thread-safe free list of ``bytearray`` buffers of one fixed capacity.

    Only idle buffers are tracked. A buffer that is never released costs
    memory, not correctness.
    """

    def __init__(self, capacity: int, *, max_idle: int | None = None) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._capacity = capacity
        self._max_idle = max_idle
        self._zeros = bytes(capacity)
        self._idle: list[bytearray] = []
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    def acquire(self) -> bytearray:
        """Return an idle buffer, allocating one when the pool is empty."""
        with self._lock:
            if self._idle:
                return self._idle.pop()
        return bytearray(self._capacity)

    def release(self, buf: bytearray) -> None:
        """Zero-fill ``buf`` and return it to the pool.

        Buffers of a foreign size, or beyond ``max_idle``, are dropped.
        """
        if len(buf) != self._capacity:
            return
        buf[:] = self._zeros
        with self._lock:
            if self._max_idle is not None and len(self._idle) >= self._max_idle:
                return
            self._idle.append(buf)
