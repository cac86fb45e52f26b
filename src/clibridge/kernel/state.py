from __future__ import annotations

import logging
import re
import threading
import time
from collections import deque
from typing import Deque, Iterable, List, Optional, Pattern, Union

from ..contracts.v1 import DetectionResult
from ..util.debounce import Debouncer
from ..util.ring import RingBuffer
from .events import EventChannel
from .patterns import StatePattern, compile_patterns, default_state_patterns, normalize_for_matching

logger = logging.getLogger("clibridge.state")


class StateClassifier:
    """Map a raw output stream onto a small set of named states.

    Groups are evaluated from highest to lowest priority (insertion order breaks
    ties) and the first matching pattern of the first matching group wins. A
    detection is only committed after `debounce_ms` without further output;
    unmatched chunks produce no detection and never raise.
    """

    def __init__(
        self,
        *,
        default_state: str = "unknown",
        history_size: int = 100,
        debounce_ms: int = 100,
        buffer_size: int = 5_000,
        match_window: int = 1_000,
        patterns: Optional[Iterable[StatePattern]] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._current = default_state
        self._groups: List[StatePattern] = []
        self._history: Deque[DetectionResult] = deque(maxlen=max(1, int(history_size)))
        self._buffer: RingBuffer[str] = RingBuffer(buffer_size, "")
        self._match_window = max(1, int(match_window))
        self._pending: Optional[DetectionResult] = None
        self._debounce = Debouncer(max(0, int(debounce_ms)) / 1000.0, self._commit, name="state-debounce")

        self.state_changed: EventChannel[dict] = EventChannel("state-changed")

        for group in patterns if patterns is not None else default_state_patterns():
            self.add_pattern(group)

    # ------------------------------------------------------------------
    # pattern table
    # ------------------------------------------------------------------

    def add_pattern(self, group: StatePattern) -> None:
        """Add or replace a named group."""
        with self._lock:
            self._groups = [g for g in self._groups if g.name != group.name]
            self._groups.append(group)
            # sorted() is stable: equal priorities keep insertion order.
            self._groups = sorted(self._groups, key=lambda g: -g.priority)

    def add_group(
        self,
        name: str,
        patterns: Iterable[Union[str, Pattern[str]]],
        *,
        confidence: float,
        priority: int,
        flags: int = re.MULTILINE,
    ) -> StatePattern:
        group = StatePattern(
            name=name,
            patterns=compile_patterns(patterns, flags),
            confidence=float(confidence),
            priority=int(priority),
        )
        self.add_pattern(group)
        return group

    def remove_pattern(self, name: str) -> None:
        with self._lock:
            self._groups = [g for g in self._groups if g.name != name]

    def group_names(self) -> List[str]:
        with self._lock:
            return [g.name for g in self._groups]

    # ------------------------------------------------------------------
    # stream processing
    # ------------------------------------------------------------------

    def process(self, chunk: str) -> Optional[DetectionResult]:
        text = normalize_for_matching(chunk)
        with self._lock:
            self._buffer.append(text)
            det = self._analyze_locked(text)
            if det is not None:
                self._history.append(det)
                self._pending = det
            pending = self._pending
        # Any output restarts the quiet period of a pending detection.
        if pending is not None:
            self._debounce.trigger()
        return det

    def analyze(self, chunk: str) -> Optional[DetectionResult]:
        """Classify a chunk against the current buffer without recording anything."""
        with self._lock:
            return self._analyze_locked(normalize_for_matching(chunk))

    def _analyze_locked(self, chunk: str) -> Optional[DetectionResult]:
        tail = self._buffer.tail(self._match_window)
        for group in self._groups:
            for pattern in group.patterns:
                m = pattern.search(chunk) or pattern.search(tail)
                if m is None:
                    continue
                return DetectionResult(
                    state=group.name,
                    confidence=group.confidence,
                    pattern=pattern.pattern,
                    match=m.group(0),
                    timestamp=time.time(),
                )
        return None

    def _commit(self) -> None:
        with self._lock:
            det = self._pending
            self._pending = None
            if det is None or det.state == self._current:
                return
            previous = self._current
            self._current = det.state
        logger.debug("state %s -> %s (%.2f)", previous, det.state, det.confidence)
        self.state_changed.publish(
            {
                "state": det.state,
                "previous": previous,
                "confidence": det.confidence,
                "match": det.match,
                "timestamp": det.timestamp,
                "forced": False,
            }
        )

    def flush(self) -> None:
        """Commit a pending detection immediately."""
        self._debounce.flush()

    # ------------------------------------------------------------------
    # state access
    # ------------------------------------------------------------------

    @property
    def current(self) -> str:
        with self._lock:
            return self._current

    def history(self) -> List[DetectionResult]:
        with self._lock:
            return list(self._history)

    def confidence(self) -> float:
        """Confidence of the latest detection that agrees with the current state."""
        with self._lock:
            for det in reversed(self._history):
                if det.state == self._current:
                    return det.confidence
        return 0.0

    def set_state(self, state: str) -> None:
        """Override the current state (manual recovery); always publishes."""
        self._debounce.cancel()
        with self._lock:
            self._pending = None
            previous = self._current
            self._current = state
        self.state_changed.publish(
            {
                "state": state,
                "previous": previous,
                "confidence": 1.0,
                "match": "",
                "timestamp": time.time(),
                "forced": True,
            }
        )

    def reset(self, state: Optional[str] = None) -> None:
        """Drop buffered output, history and any pending commit."""
        self._debounce.cancel()
        with self._lock:
            self._pending = None
            self._buffer.clear()
            self._history.clear()
            if state is not None:
                self._current = state

    def buffer(self) -> str:
        with self._lock:
            return self._buffer.getvalue()

    def close(self) -> None:
        self._debounce.cancel()
        self.state_changed.clear()
