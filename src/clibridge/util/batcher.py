from __future__ import annotations

import threading
from typing import Callable, List, Optional


class StreamBatcher:
    """Coalesce rapid small output chunks into one batch per throttle window.

    The first push after an idle period opens a window; everything pushed before
    the window closes is joined and handed to `on_batch` in a single call.
    """

    def __init__(self, on_batch: Callable[[str], None], *, throttle_ms: int = 50) -> None:
        self._on_batch = on_batch
        self._throttle = max(0, int(throttle_ms)) / 1000.0
        self._lock = threading.Lock()
        self._queue: List[str] = []
        self._timer: Optional[threading.Timer] = None
        self._closed = False

    def push(self, data: str) -> None:
        if not data:
            return
        with self._lock:
            if self._closed:
                return
            self._queue.append(data)
            if self._timer is None:
                self._schedule_locked()

    def _schedule_locked(self) -> None:
        timer = threading.Timer(self._throttle, self._on_timer)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _take_locked(self) -> str:
        chunk = "".join(self._queue)
        self._queue = []
        return chunk

    def _on_timer(self) -> None:
        with self._lock:
            self._timer = None
            chunk = self._take_locked()
        if chunk:
            self._on_batch(chunk)
        with self._lock:
            # Data pushed while the callback ran opens the next window.
            if self._queue and self._timer is None and not self._closed:
                self._schedule_locked()

    def flush(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            chunk = self._take_locked()
        if chunk:
            self._on_batch(chunk)

    def close(self) -> None:
        self.flush()
        with self._lock:
            self._closed = True
