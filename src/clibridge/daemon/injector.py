"""Serialized prompt delivery into agent PTYs.

One worker thread drains a single FIFO queue, so at most one injection is in
flight across all agents. A failed delivery is pushed back to the front of the
queue after a capped, jittered backoff and retried up to `max_retries` times;
after that the caller's future fails with the last underlying error.
"""
from __future__ import annotations

import logging
import random
import threading
import time
import uuid
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Protocol

from ..contracts.v1 import InjectionOptions, InjectionResult
from ..kernel.errors import AgentNotFound, BridgeError, InjectionFailure
from ..kernel.events import EventBus

logger = logging.getLogger("clibridge.injector")

INJECTOR_TOPICS = (
    "injection-queued",
    "injected",
    "injection-retry",
    "injection-failed",
    "typing-progress",
)

DEFAULT_MAX_RETRIES = 3

ReadyWaiter = Callable[[float], bool]


class Writable(Protocol):
    def write(self, text: str) -> None: ...


@dataclass
class _Registration:
    manager: Writable
    ready_waiter: Optional[ReadyWaiter] = None


@dataclass
class _QueueItem:
    id: str
    agent: str
    text: str
    options: InjectionOptions
    future: "Future[InjectionResult]"
    retries: int = 0
    enqueued_at: float = field(default_factory=time.time)


def _new_injection_id() -> str:
    return f"inj_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class InputInjector:
    def __init__(
        self,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = 2.0,
        backoff_cap: float = 5.0,
        jitter: float = 0.25,
        history_size: int = 100,
        sleep: Optional[Callable[[float], Any]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._max_retries = max(0, int(max_retries))
        self._backoff_base = float(backoff_base)
        self._backoff_cap = float(backoff_cap)
        self._jitter = max(0.0, float(jitter))
        self._rng = rng or random.Random()
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait

        self._cond = threading.Condition()
        self._agents: Dict[str, _Registration] = {}
        self._queue: Deque[_QueueItem] = deque()
        self._active: Optional[_QueueItem] = None
        self._history: Deque[InjectionResult] = deque(maxlen=max(1, int(history_size)))
        self._worker: Optional[threading.Thread] = None
        self._closed = False

        self.events = EventBus(INJECTOR_TOPICS)

    # ------------------------------------------------------------------
    # registry
    # ------------------------------------------------------------------

    def register_agent(self, name: str, manager: Writable, *, ready_waiter: Optional[ReadyWaiter] = None) -> None:
        with self._cond:
            self._agents[name] = _Registration(manager=manager, ready_waiter=ready_waiter)
        logger.info("registered agent", extra={"agent_name": name})

    def unregister_agent(self, name: str) -> None:
        with self._cond:
            self._agents.pop(name, None)
        logger.info("unregistered agent", extra={"agent_name": name})

    def is_registered(self, name: str) -> bool:
        with self._cond:
            return name in self._agents

    def agent_names(self) -> List[str]:
        with self._cond:
            return list(self._agents)

    # ------------------------------------------------------------------
    # enqueue
    # ------------------------------------------------------------------

    def inject(
        self,
        agent: str,
        text: str,
        options: Optional[InjectionOptions] = None,
        **overrides: Any,
    ) -> "Future[InjectionResult]":
        """Queue `text` for `agent`; the returned future resolves on delivery.

        Raises AgentNotFound at once when `agent` is not registered.
        """
        opts = options or InjectionOptions()
        if overrides:
            opts = opts.model_copy(update=overrides)
        future: "Future[InjectionResult]" = Future()
        item = _QueueItem(id=_new_injection_id(), agent=agent, text=text, options=opts, future=future)
        with self._cond:
            if self._closed:
                raise InjectionFailure("injector is closed")
            if agent not in self._agents:
                raise AgentNotFound(agent)
            self._queue.append(item)
            depth = len(self._queue)
            self._ensure_worker_locked()
            self._cond.notify_all()
        logger.debug(
            "queued injection (depth=%s, len=%s)",
            depth,
            len(text),
            extra={"agent_name": agent, "injection_id": item.id},
        )
        self.events.emit("injection-queued", {"id": item.id, "agent": agent, "queue_length": depth})
        return future

    def inject_to_all(
        self,
        text: str,
        options: Optional[InjectionOptions] = None,
    ) -> Dict[str, "Future[InjectionResult]"]:
        return {name: self.inject(name, text, options) for name in self.agent_names()}

    def _ensure_worker_locked(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._worker = threading.Thread(target=self._run, name="clibridge-injector", daemon=True)
        self._worker.start()

    # ------------------------------------------------------------------
    # worker
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if self._closed:
                    return
                item = self._queue.popleft()
                self._active = item
                reg = self._agents.get(item.agent)
            try:
                self._attempt(item, reg)
            finally:
                with self._cond:
                    self._active = None

    def _attempt(self, item: _QueueItem, reg: Optional[_Registration]) -> None:
        if item.retries == 0 and not item.future.set_running_or_notify_cancel():
            return
        started = time.time()
        try:
            if reg is None:
                raise AgentNotFound(item.agent)
            self._deliver(item, reg)
        except (BridgeError, OSError) as e:
            self._on_failure(item, e)
            return
        except Exception as e:
            logger.exception("injection crashed", extra={"agent_name": item.agent, "injection_id": item.id})
            self._fail(item, e)
            return

        result = InjectionResult(
            id=item.id,
            agent=item.agent,
            success=True,
            injected_text=item.text,
            duration=time.time() - item.enqueued_at,
            attempts=item.retries + 1,
        )
        with self._cond:
            self._history.append(result)
        logger.info(
            "injected %s chars in %.3fs",
            len(item.text),
            time.time() - started,
            extra={"agent_name": item.agent, "injection_id": item.id},
        )
        item.future.set_result(result)
        self.events.emit("injected", {"id": item.id, "agent": item.agent, "attempts": result.attempts})

    def _on_failure(self, item: _QueueItem, error: BaseException) -> None:
        if item.retries >= self._max_retries or self._closed:
            logger.error(
                "injection failed after %s attempts: %s",
                item.retries + 1,
                error,
                extra={"agent_name": item.agent, "injection_id": item.id},
            )
            self._fail(item, error)
            return
        item.retries += 1
        delay = self.backoff_delay(item.retries)
        logger.warning(
            "retrying injection, attempt %s in %.2fs: %s",
            item.retries,
            delay,
            error,
            extra={"agent_name": item.agent, "injection_id": item.id},
        )
        self.events.emit(
            "injection-retry",
            {"id": item.id, "agent": item.agent, "attempt": item.retries, "delay": delay, "error": str(error)},
        )
        self._sleep(delay)
        with self._cond:
            if self._closed:
                abandoned = True
            else:
                abandoned = False
                self._queue.appendleft(item)
        if abandoned:
            self._fail(item, error)

    def _fail(self, item: _QueueItem, error: BaseException) -> None:
        result = InjectionResult(
            id=item.id,
            agent=item.agent,
            success=False,
            injected_text=item.text,
            duration=time.time() - item.enqueued_at,
            attempts=item.retries + 1,
            error=str(error),
        )
        with self._cond:
            self._history.append(result)
        if not item.future.done():
            item.future.set_exception(error)
        self.events.emit("injection-failed", {"id": item.id, "agent": item.agent, "error": str(error)})

    def backoff_delay(self, attempt: int) -> float:
        base = min(self._backoff_base * max(1, int(attempt)), self._backoff_cap)
        return base + self._rng.uniform(0.0, self._jitter)

    def _deliver(self, item: _QueueItem, reg: _Registration) -> None:
        opts = item.options
        manager = reg.manager
        text = item.text

        if opts.raw:
            manager.write(text)
            return

        if opts.wait_for_ready and reg.ready_waiter is not None:
            if not reg.ready_waiter(opts.timeout):
                logger.warning(
                    "agent not ready after %.1fs; delivering anyway",
                    opts.timeout,
                    extra={"agent_name": item.agent, "injection_id": item.id},
                )

        if opts.human_like:
            self._human_type(item, manager, text, opts.typing_speed)
        else:
            manager.write(text)

        if opts.confirm_with_enter and not text.endswith(("\n", "\r")):
            manager.write(opts.enter_sequence)

    def _human_type(self, item: _QueueItem, manager: Writable, text: str, cpm: int) -> None:
        base = 60.0 / max(1, int(cpm))
        n = len(text)
        for i, ch in enumerate(text):
            manager.write(ch)
            if i % 10 == 0:
                self.events.emit(
                    "typing-progress",
                    {"id": item.id, "agent": item.agent, "progress": i / n, "character": i},
                )
            if i < n - 1 and self._stop.wait(base * self._rng.uniform(0.7, 1.3)):
                raise InjectionFailure(
                    f"injector closed while typing ({i + 1}/{n} characters sent)",
                    details={"agent": item.agent, "injection_id": item.id},
                )

    # ------------------------------------------------------------------
    # inspection / shutdown
    # ------------------------------------------------------------------

    def queue_status(self) -> Dict[str, Any]:
        with self._cond:
            nxt = self._queue[0] if self._queue else None
            return {
                "queue_length": len(self._queue),
                "active": self._active.id if self._active else None,
                "active_agent": self._active.agent if self._active else None,
                "next": {"id": nxt.id, "agent": nxt.agent} if nxt else None,
            }

    def history(self) -> List[InjectionResult]:
        with self._cond:
            return list(self._history)

    def clear_queue(self) -> int:
        """Drop queued (not in-flight) injections; their futures are cancelled."""
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
        for item in items:
            if not item.future.cancel():
                # Already running: a retry waiting for its turn.
                item.future.set_exception(InjectionFailure("injection queue cleared"))
        if items:
            logger.info("injection queue cleared (%s items)", len(items))
        return len(items)

    def close(self, timeout: float = 5.0) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            worker = self._worker
        self._stop.set()
        self.clear_queue()
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout)
        self.events.clear()
