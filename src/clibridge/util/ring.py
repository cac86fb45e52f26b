from __future__ import annotations

from collections import deque
from typing import Deque, Generic, TypeVar

T = TypeVar("T", str, bytes)


class RingBuffer(Generic[T]):
    """Fixed-capacity buffer of the most recent `capacity` characters or bytes.

    Chunks are kept as-is in a deque and the oldest ones are dropped (the head
    chunk trimmed) once the total size exceeds capacity. Not thread-safe;
    owners guard it with their own lock.
    """

    def __init__(self, capacity: int, empty: T) -> None:
        self._capacity = max(1, int(capacity))
        self._empty: T = empty
        self._chunks: Deque[T] = deque()
        self._size = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return self._size

    def append(self, chunk: T) -> None:
        if not chunk:
            return
        if len(chunk) >= self._capacity:
            self._chunks.clear()
            chunk = chunk[-self._capacity :]
            self._chunks.append(chunk)
            self._size = len(chunk)
            return
        self._chunks.append(chunk)
        self._size += len(chunk)
        while self._size > self._capacity and self._chunks:
            over = self._size - self._capacity
            head = self._chunks[0]
            if len(head) <= over:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[over:]
                self._size -= over

    def tail(self, n: int) -> T:
        """Return the last `n` items (the whole buffer when n <= 0)."""
        limit = int(n or 0)
        if limit <= 0 or limit >= self._size:
            return self._empty.join(self._chunks)
        out: list[T] = []
        total = 0
        for chunk in reversed(self._chunks):
            out.append(chunk)
            total += len(chunk)
            if total >= limit:
                break
        data = self._empty.join(reversed(out))
        return data[-limit:]

    def getvalue(self) -> T:
        return self._empty.join(self._chunks)

    def clear(self) -> None:
        self._chunks.clear()
        self._size = 0

    def resize(self, capacity: int) -> None:
        self._capacity = max(1, int(capacity))
        data = self.getvalue()
        self.clear()
        self.append(data)
