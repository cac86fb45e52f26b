"""In-memory process manager used by orchestrator tests."""
from __future__ import annotations

import threading
from typing import Callable, List, Optional


class FakeProcess:
    next_pid = 4000

    def __init__(self, config) -> None:
        from clibridge.kernel.events import EventChannel

        self.config = config
        self.output = EventChannel("output")
        self.state_change = EventChannel("state-change")
        self.error = EventChannel("error")
        self.terminated = EventChannel("terminated")
        self.writes: List[str] = []
        self.emitted: List[str] = []
        self.killed = False
        self.spawned = False
        self.ready_marks = 0
        self.fail_writes = 0
        self.size = (config.cols, config.rows)
        self.on_enter: Optional[Callable[["FakeProcess"], None]] = None
        self._lock = threading.Lock()
        FakeProcess.next_pid += 1
        self._pid = FakeProcess.next_pid

    def spawn(self) -> None:
        from clibridge.kernel.errors import SpawnFailure

        if self.config.command == "missing":
            exc = FileNotFoundError(self.config.command)
            self.error.publish(exc)
            raise SpawnFailure(f"failed to spawn {self.config.command}: {exc}")
        self.spawned = True
        if self.config.command == "exits":
            self.exit(0)

    def write(self, text: str) -> None:
        from clibridge.kernel.errors import InjectionFailure

        with self._lock:
            if self.fail_writes != 0:
                if self.fail_writes > 0:
                    self.fail_writes -= 1
                raise InjectionFailure("write failed: broken pipe")
            self.writes.append(text)
        if text.endswith("\r") and self.on_enter is not None:
            self.on_enter(self)

    def emit(self, text: str) -> None:
        self.emitted.append(text)
        self.output.publish(text)

    def exit(self, code: int = 0) -> None:
        self.terminated.publish({"exit_code": code, "signal": None})

    def kill(self, sig: int = 15) -> None:
        self.killed = True

    def join(self, timeout: Optional[float] = None) -> None:
        return None

    def resize(self, cols: int, rows: int) -> None:
        self.size = (cols, rows)

    def mark_ready(self) -> None:
        self.ready_marks += 1

    @property
    def pid(self) -> int:
        return self._pid

    def recent_output(self, lines: int = 100) -> str:
        return "".join(self.emitted)


class FakeFactory:
    def __init__(self) -> None:
        self.created: List[FakeProcess] = []

    def __call__(self, config) -> FakeProcess:
        p = FakeProcess(config)
        self.created.append(p)
        return p

    def last(self, name: str) -> FakeProcess:
        for p in reversed(self.created):
            if p.config.name == name:
                return p
        raise KeyError(name)


def make_orchestrator(*, max_retries: int = 3, **settings):
    from clibridge.daemon.injector import InputInjector
    from clibridge.daemon.orchestrator import Orchestrator, OrchestratorSettings

    settings.setdefault("debounce_ms", 10)
    settings.setdefault("default_timeout", 2.0)
    settings.setdefault("step_retry_delay", 0.0)
    factory = FakeFactory()
    orch = Orchestrator(
        OrchestratorSettings(**settings),
        injector=InputInjector(max_retries=max_retries, sleep=lambda _s: None),
        process_factory=factory,
        sleep=lambda _s: None,
    )
    return orch, factory
