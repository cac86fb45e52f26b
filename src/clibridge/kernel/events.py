"""Typed publish/subscribe channels.

Every component owns its channels explicitly instead of inheriting an emitter.
Handlers run on the publishing thread, outside any channel lock, in
subscription order.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, Generic, Iterable, List, Tuple, TypeVar

logger = logging.getLogger("clibridge.events")

P = TypeVar("P")

Unsubscribe = Callable[[], None]


class EventChannel(Generic[P]):
    def __init__(self, topic: str) -> None:
        self.topic = topic
        self._lock = threading.Lock()
        self._seq = 0
        # (token, handler, once)
        self._handlers: List[Tuple[int, Callable[[P], None], bool]] = []

    def subscribe(self, handler: Callable[[P], None]) -> Unsubscribe:
        return self._add(handler, once=False)

    def once(self, handler: Callable[[P], None]) -> Unsubscribe:
        return self._add(handler, once=True)

    def _add(self, handler: Callable[[P], None], *, once: bool) -> Unsubscribe:
        with self._lock:
            self._seq += 1
            token = self._seq
            self._handlers.append((token, handler, once))

        def _unsubscribe() -> None:
            with self._lock:
                self._handlers = [h for h in self._handlers if h[0] != token]

        return _unsubscribe

    def publish(self, payload: P) -> None:
        with self._lock:
            handlers = list(self._handlers)
            if any(once for _, _, once in handlers):
                self._handlers = [h for h in self._handlers if not h[2]]
        for _, handler, _ in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception("event handler failed", extra={"op": self.topic})

    def listener_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def clear(self) -> None:
        with self._lock:
            self._handlers = []


class EventBus:
    """A fixed set of named channels; unknown topics are a programming error."""

    def __init__(self, topics: Iterable[str]) -> None:
        self._channels: Dict[str, EventChannel[dict]] = {t: EventChannel(t) for t in topics}

    @property
    def topics(self) -> List[str]:
        return list(self._channels)

    def channel(self, topic: str) -> EventChannel[dict]:
        try:
            return self._channels[topic]
        except KeyError:
            raise KeyError(f"unknown event topic: {topic}") from None

    def on(self, topic: str, handler: Callable[[dict], None]) -> Unsubscribe:
        return self.channel(topic).subscribe(handler)

    def once(self, topic: str, handler: Callable[[dict], None]) -> Unsubscribe:
        return self.channel(topic).once(handler)

    def emit(self, topic: str, payload: dict) -> None:
        self.channel(topic).publish(payload)

    def listener_count(self, topic: str) -> int:
        return self.channel(topic).listener_count()

    def clear(self) -> None:
        for ch in self._channels.values():
            ch.clear()
