"""Size-bucketed pool of reusable byte buffers."""

from __future__ import annotations

import threading
from collections import deque
from typing import Any, Optional

# (smallest size, largest size, bucket step): below 2048 bytes buckets grow by
# 64 bytes, above that by 2048 bytes.
_AREAS = ((1, 2048, 64), (2049, 65536, 2048))

MAX_POOLED_SIZE = 65536
DEFAULT_MAX_FREE = 256


def bucket_capacity(size: int) -> Optional[int]:
    """Capacity of the buffer the pool hands out for ``size`` bytes.

    Returns None when ``size`` is too large to be pooled.
    """
    if size < 0:
        raise ValueError(f"negative buffer size: {size}")
    for low, high, step in _AREAS:
        if size <= high:
            position = max(size - low, 0) // step
            return low - 1 + (position + 1) * step
    return None


class MemAreaPool:
    """Hands out memoryviews over pooled bytearrays and takes them back."""

    def __init__(self, max_free: int = DEFAULT_MAX_FREE) -> None:
        self._lock = threading.Lock()
        self._free: dict[int, deque[bytearray]] = {}
        self._max_free = max_free

    def make(self, size: int) -> memoryview:
        """A writable view of exactly ``size`` bytes."""
        capacity = bucket_capacity(size)
        if capacity is None:
            return memoryview(bytearray(size))
        buffer: Optional[bytearray] = None
        with self._lock:
            free = self._free.get(capacity)
            if free:
                buffer = free.pop()
        if buffer is None:
            buffer = bytearray(capacity)
        return memoryview(buffer)[:size]

    def release(self, buf: Any) -> bool:
        """Return a buffer from ``make`` to the pool; False if it is not poolable."""
        if buf is None:
            return False
        base = buf.obj if isinstance(buf, memoryview) else buf
        if not isinstance(base, bytearray):
            return False
        capacity = len(base)
        if capacity > MAX_POOLED_SIZE or bucket_capacity(capacity) != capacity:
            return False
        with self._lock:
            free = self._free.setdefault(capacity, deque())
            if len(free) < self._max_free:
                free.append(base)
        return True