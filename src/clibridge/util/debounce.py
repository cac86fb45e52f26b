from __future__ import annotations

import threading
from typing import Any, Callable, Optional, Tuple


class Debouncer:
    """Run `callback` once a quiet period has passed since the last trigger.

    Each `trigger()` cancels the pending run and schedules a new one with the
    latest arguments, so bursts collapse into a single call carrying the last
    observed arguments.
    """

    def __init__(self, delay_seconds: float, callback: Callable[..., None], *, name: str = "debounce") -> None:
        self._delay = max(0.0, float(delay_seconds))
        self._callback = callback
        self._name = name
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Tuple[Tuple[Any, ...], dict]] = None
        self._generation = 0

    @property
    def delay(self) -> float:
        return self._delay

    def trigger(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            gen = self._generation
            self._pending = (args, kwargs)
            timer = threading.Timer(self._delay, self._fire, args=(gen,))
            timer.daemon = True
            timer.name = self._name
            self._timer = timer
        timer.start()

    def pending(self) -> bool:
        with self._lock:
            return self._pending is not None

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = None
            self._generation += 1

    def flush(self) -> None:
        """Run the pending callback now, if any."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            pending = self._pending
            self._pending = None
            self._generation += 1
        if pending is not None:
            args, kwargs = pending
            self._callback(*args, **kwargs)

    def _fire(self, gen: int) -> None:
        with self._lock:
            # A newer trigger or a cancel raced with this timer.
            if gen != self._generation or self._pending is None:
                return
            args, kwargs = self._pending
            self._pending = None
            self._timer = None
        self._callback(*args, **kwargs)
