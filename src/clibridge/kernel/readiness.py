from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterable, Optional, Union

from ..contracts.v1 import ReadinessResult
from ..util.debounce import Debouncer
from ..util.ring import RingBuffer
from .events import EventChannel
from .patterns import (
    AgentKind,
    PatternLike,
    ReadinessCatalog,
    ReadinessPatternSet,
    kind_name,
    normalize_for_matching,
)

logger = logging.getLogger("clibridge.readiness")


class ReadinessClassifier:
    """Answer "can a new prompt be sent now?" for one agent.

    Output is kept in a rolling buffer sized by the active kind's pattern set.
    After a quiet period the buffer is matched against that set; `ready` and
    `not_ready` are published only when the boolean flips.
    """

    def __init__(
        self,
        agent_type: Union[str, AgentKind] = AgentKind.CUSTOM,
        *,
        catalog: Optional[ReadinessCatalog] = None,
        debounce_ms: int = 100,
        max_buffer_size: int = 1_000,
    ) -> None:
        self._catalog = catalog if catalog is not None else ReadinessCatalog()
        self._lock = threading.Lock()
        self._kind = kind_name(AgentKind.parse(agent_type))
        self._max_buffer_size = max(1, int(max_buffer_size))
        self._buffer: RingBuffer[str] = RingBuffer(self._buffer_size_for(self._kind), "")
        self._ready = False
        self._debounce = Debouncer(max(0, int(debounce_ms)) / 1000.0, self._detect, name="ready-debounce")

        self.ready: EventChannel[ReadinessResult] = EventChannel("ready")
        self.not_ready: EventChannel[ReadinessResult] = EventChannel("not-ready")

    def _active_set(self) -> ReadinessPatternSet:
        return self._catalog.get(self._kind)

    def _buffer_size_for(self, kind: str) -> int:
        entry = self._catalog.get(kind)
        return int(entry.buffer_size or self._max_buffer_size)

    @property
    def agent_type(self) -> str:
        with self._lock:
            return self._kind

    def process(self, chunk: str) -> None:
        text = normalize_for_matching(chunk)
        with self._lock:
            self._buffer.append(text)
        self._debounce.trigger()

    def _detect(self) -> None:
        with self._lock:
            kind = self._kind
            entry = self._catalog.get(kind)
            buf = self._buffer.getvalue()
            match: Optional[str] = None
            for pattern in entry.patterns:
                m = pattern.search(buf)
                if m is not None:
                    match = m.group(0).strip()
                    break
            if match is not None:
                if self._ready:
                    return
                self._ready = True
            else:
                if not self._ready:
                    return
                self._ready = False

        if match is not None:
            confidence = 0.7 if entry.kind == AgentKind.CUSTOM.value else 0.9
            result = ReadinessResult(ready=True, agent_type=kind, match=match, confidence=confidence, timestamp=time.time())
            logger.debug("ready (%s) on %r", kind, match)
            self.ready.publish(result)
        else:
            result = ReadinessResult(ready=False, agent_type=kind, confidence=0.9, timestamp=time.time())
            logger.debug("not ready (%s)", kind)
            self.not_ready.publish(result)

    def flush(self) -> None:
        """Run a pending detection immediately."""
        self._debounce.flush()

    def set_type(self, agent_type: Union[str, AgentKind]) -> None:
        """Switch pattern sets; clears the buffer and resets to not-ready."""
        kind = kind_name(AgentKind.parse(agent_type))
        self._debounce.cancel()
        with self._lock:
            self._kind = kind
            self._buffer = RingBuffer(self._buffer_size_for(kind), "")
            self._ready = False

    def reset(self) -> None:
        """Forget buffered output and drop to not-ready without publishing."""
        self._debounce.cancel()
        with self._lock:
            self._buffer.clear()
            self._ready = False

    def add_custom_pattern(
        self,
        agent_type: Union[str, AgentKind],
        patterns: Iterable[PatternLike],
        *,
        buffer_size: int = 1_000,
    ) -> None:
        self._catalog.register(agent_type, patterns, buffer_size=buffer_size)
        if kind_name(AgentKind.parse(agent_type)) == self.agent_type:
            with self._lock:
                self._buffer.resize(self._buffer_size_for(self._kind))

    def is_ready(self) -> bool:
        with self._lock:
            return self._ready

    def wait_until_ready(self, timeout: float) -> bool:
        """Block until the next ready transition or until `timeout` seconds pass.

        Returns True at once when already ready. The temporary subscription is
        always removed, so a timed-out wait leaves no listener behind.
        """
        if self.is_ready():
            return True
        hit = threading.Event()
        unsubscribe = self.ready.once(lambda _result: hit.set())
        try:
            # A flip may have landed between the check above and subscribing.
            if self.is_ready():
                return True
            return hit.wait(max(0.0, float(timeout)))
        finally:
            unsubscribe()

    def clear_buffer(self) -> None:
        with self._lock:
            self._buffer.clear()

    def buffer(self) -> str:
        with self._lock:
            return self._buffer.getvalue()

    def buffer_info(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "current_size": len(self._buffer),
                "max_size": self._buffer.capacity,
                "agent_type": self._kind,
                "ready": self._ready,
            }

    def close(self) -> None:
        self._debounce.cancel()
        self.ready.clear()
        self.not_ready.clear()
