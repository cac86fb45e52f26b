"""Agent registry, lifecycle and workflows.

Every agent owns one PTY process manager and two classifiers fed from its
output stream. Prompts go through the shared InputInjector, so deliveries
across all agents are strictly FIFO.
"""
from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set, Union

from ..contracts.v1 import AgentConfig, AgentInfo, AgentMetrics, AgentStatus, InjectionOptions, Workflow, WorkflowStep
from ..kernel.errors import (
    AgentExists,
    AgentNotFound,
    BridgeError,
    InjectionTimeout,
    OrchestratorError,
    SpawnFailure,
    WorkflowError,
    WorkflowStepFailure,
)
from ..kernel.events import EventBus
from ..kernel.patterns import AgentKind, ReadinessCatalog, kind_name
from ..kernel.readiness import ReadinessClassifier
from ..kernel.state import StateClassifier
from ..runners import pty as pty_runner
from ..util.sanitize import CLEAR_SCREEN_MARKER, OutputSanitizer
from ..util.time import utc_now_iso
from .injector import InputInjector

logger = logging.getLogger("clibridge.orchestrator")

ORCHESTRATOR_TOPICS = (
    "agent-spawned",
    "agent-terminated",
    "agent-output",
    "agent-ready",
    "agent-busy",
    "state-change",
    "agent-error",
    "memory-saved",
    "workflow-started",
    "workflow-step-started",
    "workflow-step-completed",
    "workflow-completed",
    "workflow-failed",
)

STREAMED_PLACEHOLDER = "[response-streamed]"

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")

ProcessFactory = Callable[[pty_runner.PtyConfig], Any]


@dataclass
class OrchestratorSettings:
    max_agents: int = 10
    default_timeout: float = 30.0
    debounce_ms: int = 100
    cols: int = 80
    rows: int = 24
    output_buffer_bytes: int = 10_000
    step_retry_delay: float = 2.0
    typing_speed: int = 300


@dataclass
class _Agent:
    config: AgentConfig
    manager: Any
    state: StateClassifier
    readiness: ReadinessClassifier
    status: AgentStatus = "idle"
    metrics: AgentMetrics = field(default_factory=AgentMetrics)
    last_prompt: Optional[str] = None
    last_response: Optional[str] = None
    spawned_at: str = field(default_factory=utc_now_iso)
    capture: Optional[List[str]] = None
    unsubscribers: List[Callable[[], None]] = field(default_factory=list)
    announced: bool = False
    deferred: List[Callable[[], None]] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.config.id

    def detach(self) -> None:
        for unsubscribe in self.unsubscribers:
            unsubscribe()
        self.unsubscribers = []
        self.state.close()
        self.readiness.close()


def _readable(text: str) -> str:
    s = OutputSanitizer(strip_ansi=True, max_line_length=10_000)
    cleaned = s.sanitize((text or "").replace("\r\n", "\n"))
    return cleaned.replace(CLEAR_SCREEN_MARKER, "").replace("\r", "")


def render_prompt(template: str, memory: Dict[str, Any]) -> str:
    """Substitute `{{key}}` placeholders from memory; unknown keys stay as written."""

    def _sub(m: re.Match[str]) -> str:
        key = m.group(1)
        if key not in memory:
            return m.group(0)
        value = memory[key]
        return value if isinstance(value, str) else str(value)

    return _PLACEHOLDER_RE.sub(_sub, template or "")


def order_steps(workflow: Workflow) -> List[WorkflowStep]:
    """Dependency order, declaration order among steps that are free to run."""
    by_id: Dict[str, WorkflowStep] = {}
    for step in workflow.steps:
        if step.id in by_id:
            raise WorkflowError(f"duplicate step id: {step.id}", details={"workflow_id": workflow.id})
        by_id[step.id] = step
    for step in workflow.steps:
        for dep in step.depends_on:
            if dep not in by_id:
                raise WorkflowError(
                    f"step {step.id} depends on unknown step {dep}",
                    details={"workflow_id": workflow.id, "step_id": step.id},
                )

    done: Set[str] = set()
    ordered: List[WorkflowStep] = []
    remaining = list(workflow.steps)
    while remaining:
        for i, step in enumerate(remaining):
            if all(dep in done for dep in step.depends_on):
                ordered.append(step)
                done.add(step.id)
                del remaining[i]
                break
        else:
            raise WorkflowError(
                "circular dependency between steps: " + ", ".join(s.id for s in remaining),
                details={"workflow_id": workflow.id},
            )
    return ordered


class Orchestrator:
    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        *,
        injector: Optional[InputInjector] = None,
        catalog: Optional[ReadinessCatalog] = None,
        process_factory: Optional[ProcessFactory] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        self.settings = settings or OrchestratorSettings()
        self.injector = injector or InputInjector()
        # Custom prompt sets registered here stay local to this orchestrator.
        self.catalog = catalog if catalog is not None else ReadinessCatalog()
        self._process_factory: ProcessFactory = process_factory or pty_runner.ProcessManager
        self._sleep = sleep
        self._lock = threading.Lock()
        self._agents: Dict[str, _Agent] = {}
        self._memory: Dict[str, Any] = {}
        self._closed = False

        self.events = EventBus(ORCHESTRATOR_TOPICS)

    def __enter__(self) -> "Orchestrator":
        return self

    def __exit__(self, *_exc: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def spawn_agent(self, config: Union[AgentConfig, Dict[str, Any]]) -> AgentInfo:
        cfg = config if isinstance(config, AgentConfig) else AgentConfig.model_validate(config)
        s = self.settings
        manager = self._process_factory(
            pty_runner.PtyConfig(
                command=cfg.command,
                args=list(cfg.args),
                cwd=cfg.cwd,
                env=dict(cfg.env),
                cols=int(cfg.cols or s.cols),
                rows=int(cfg.rows or s.rows),
                max_buffer_bytes=int(s.output_buffer_bytes),
                name=cfg.id,
            )
        )
        agent = _Agent(
            config=cfg,
            manager=manager,
            state=StateClassifier(default_state="initializing", debounce_ms=s.debounce_ms),
            readiness=ReadinessClassifier(cfg.type, catalog=self.catalog, debounce_ms=s.debounce_ms),
        )

        with self._lock:
            if self._closed:
                raise OrchestratorError("orchestrator is shut down")
            if cfg.id in self._agents:
                raise AgentExists(cfg.id)
            if len(self._agents) >= int(s.max_agents):
                raise OrchestratorError(
                    f"agent limit reached ({s.max_agents})",
                    details={"max_agents": s.max_agents},
                )
            self._agents[cfg.id] = agent

        # Subscribe before spawning so the first bytes are not lost.
        agent.unsubscribers = [
            manager.output.subscribe(lambda data: self._on_output(agent, data)),
            manager.error.subscribe(lambda exc: self._on_error(agent, exc)),
            manager.terminated.subscribe(lambda info: self._on_exit(agent, info)),
            manager.state_change.subscribe(lambda ev: self._on_process_state(agent, ev)),
            agent.state.state_changed.subscribe(lambda ev: self._on_state(agent, ev)),
            agent.readiness.ready.subscribe(lambda r: self._on_ready(agent, r)),
            agent.readiness.not_ready.subscribe(lambda r: self._on_not_ready(agent, r)),
        ]
        self.injector.register_agent(cfg.id, manager, ready_waiter=agent.readiness.wait_until_ready)

        try:
            manager.spawn()
        except SpawnFailure:
            self._forget(agent)
            raise

        info = self._info(agent)
        logger.info(
            "spawned %s (%s) pid=%s",
            cfg.display_name(),
            cfg.type,
            info.pid,
            extra={"agent_id": cfg.id, "op": "spawn"},
        )
        self.events.emit("agent-spawned", info.model_dump())
        with self._lock:
            agent.announced = True
            deferred, agent.deferred = agent.deferred, []
        for fn in deferred:
            fn()
        return info

    def _defer(self, agent: _Agent, fn: Callable[[], None]) -> bool:
        """Hold `fn` until agent-spawned has gone out. Returns True when held."""
        with self._lock:
            if agent.announced:
                return False
            agent.deferred.append(fn)
            return True

    def _forget(self, agent: _Agent) -> bool:
        """Drop `agent` from the registry and injector if it is still the registered one."""
        with self._lock:
            current = self._agents.get(agent.id)
            if current is not agent:
                return False
            del self._agents[agent.id]
        self.injector.unregister_agent(agent.id)
        agent.detach()
        return True

    def terminate_agent(self, agent_id: str) -> None:
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            return
        if not self._forget(agent):
            return
        agent.manager.kill()
        agent.manager.join(timeout=2.0)
        logger.info("terminated", extra={"agent_id": agent_id, "op": "terminate"})
        self.events.emit("agent-terminated", {"agent_id": agent_id, "reason": "terminated"})

    def shutdown(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            ids = list(self._agents)
        for agent_id in ids:
            self.terminate_agent(agent_id)
        self.injector.close()
        logger.info("orchestrator shut down (%s agents)", len(ids))
        self.events.clear()

    # ------------------------------------------------------------------
    # stream wiring
    # ------------------------------------------------------------------

    def _on_output(self, agent: _Agent, data: str) -> None:
        now = time.time()
        with self._lock:
            agent.metrics.last_activity = now
            if agent.capture is not None:
                agent.capture.append(data)
        self.events.emit("agent-output", {"agent_id": agent.id, "data": data, "timestamp": now})
        agent.state.process(data)
        agent.readiness.process(data)

    def _on_state(self, agent: _Agent, ev: Dict[str, Any]) -> None:
        self.events.emit(
            "state-change",
            {
                "agent_id": agent.id,
                "new_state": ev.get("state"),
                "previous": ev.get("previous"),
                "confidence": ev.get("confidence"),
            },
        )

    def _on_ready(self, agent: _Agent, result: Any) -> None:
        agent.manager.mark_ready()
        self.events.emit(
            "agent-ready",
            {
                "agent_id": agent.id,
                "match": result.match,
                "confidence": result.confidence,
                "timestamp": result.timestamp,
            },
        )

    def _on_not_ready(self, agent: _Agent, result: Any) -> None:
        self.events.emit(
            "agent-busy",
            {"agent_id": agent.id, "confidence": result.confidence, "timestamp": result.timestamp},
        )

    def _on_error(self, agent: _Agent, exc: BaseException) -> None:
        with self._lock:
            agent.status = "error"
        logger.warning("agent error: %s", exc, extra={"agent_id": agent.id})
        self.events.emit("agent-error", {"agent_id": agent.id, "error": str(exc)})

    def _on_process_state(self, agent: _Agent, ev: Dict[str, Any]) -> None:
        # Only transitions the classifiers cannot see are forwarded.
        if ev.get("state") not in ("error", "terminated"):
            return
        if self._defer(agent, lambda: self._on_process_state(agent, ev)):
            return
        self.events.emit(
            "state-change",
            {
                "agent_id": agent.id,
                "new_state": ev.get("state"),
                "previous": ev.get("previous"),
                "confidence": 1.0,
            },
        )

    def _on_exit(self, agent: _Agent, info: Dict[str, Any]) -> None:
        if self._defer(agent, lambda: self._on_exit(agent, info)):
            return
        if not self._forget(agent):
            return
        logger.info(
            "process exited code=%s signal=%s",
            info.get("exit_code"),
            info.get("signal"),
            extra={"agent_id": agent.id, "op": "exit"},
        )
        self.events.emit(
            "agent-terminated",
            {
                "agent_id": agent.id,
                "reason": "exited",
                "exit_code": info.get("exit_code"),
                "signal": info.get("signal"),
            },
        )

    # ------------------------------------------------------------------
    # queries
    # ------------------------------------------------------------------

    def _require(self, agent_id: str) -> _Agent:
        with self._lock:
            agent = self._agents.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        return agent

    def _info(self, agent: _Agent) -> AgentInfo:
        with self._lock:
            status = agent.status
            metrics = agent.metrics.model_dump()
            last_prompt = agent.last_prompt
            last_response = agent.last_response
        return AgentInfo(
            id=agent.id,
            name=agent.config.display_name(),
            type=agent.readiness.agent_type,
            status=status,
            state=agent.state.current,
            ready=agent.readiness.is_ready(),
            pid=agent.manager.pid,
            metrics=metrics,
            tags=list(agent.config.tags),
            last_prompt=last_prompt,
            last_response=last_response,
            spawned_at=agent.spawned_at,
        )

    def list_agents(self) -> List[AgentInfo]:
        with self._lock:
            agents = list(self._agents.values())
        return [self._info(a) for a in agents]

    def get_agent_info(self, agent_id: str) -> AgentInfo:
        return self._info(self._require(agent_id))

    def is_agent_ready(self, agent_id: str) -> bool:
        return self._require(agent_id).readiness.is_ready()

    def wait_for_ready(self, agent_id: str, timeout: Optional[float] = None) -> bool:
        t = self.settings.default_timeout if timeout is None else timeout
        return self._require(agent_id).readiness.wait_until_ready(t)

    def get_agent_output(self, agent_id: str, lines: int = 100, *, sanitize: bool = True) -> str:
        text = self._require(agent_id).manager.recent_output(lines)
        return _readable(text) if sanitize else text

    # ------------------------------------------------------------------
    # control
    # ------------------------------------------------------------------

    def inject_to_agent(
        self,
        agent_id: str,
        prompt: str,
        *,
        wait_for_response: bool = False,
        raw: bool = False,
        timeout: Optional[float] = None,
        options: Optional[InjectionOptions] = None,
    ) -> Dict[str, Any]:
        """Deliver `prompt` and wait for the delivery to finish.

        With `wait_for_response` the call also waits (up to `timeout`) for the
        agent's next ready prompt and returns the cleaned output seen since
        delivery as `response`.
        """
        agent = self._require(agent_id)
        t = float(self.settings.default_timeout if timeout is None else timeout)
        opts = options or InjectionOptions(timeout=t, typing_speed=self.settings.typing_speed)
        if raw and not opts.raw:
            opts = opts.model_copy(update={"raw": True})

        if wait_for_response:
            agent.readiness.reset()
        with self._lock:
            agent.status = "busy"
            agent.last_prompt = prompt
            agent.capture = [] if wait_for_response else None

        started = time.time()
        try:
            future = self.injector.inject(agent_id, prompt, opts)
            try:
                result = future.result(timeout=t)
            except FutureTimeout:
                raise InjectionTimeout(
                    f"injection not delivered within {t:.1f}s",
                    details={"agent_id": agent_id, "timeout": t},
                ) from None
            out: Dict[str, Any] = {
                "success": True,
                "agent_id": agent_id,
                "injection_id": result.id,
                "attempts": result.attempts,
            }
            if wait_for_response:
                out["ready"] = agent.readiness.wait_until_ready(t)
                with self._lock:
                    captured = "".join(agent.capture or [])
                    agent.capture = None
                response = _readable(captured)
                out["response"] = response
                with self._lock:
                    agent.last_response = response
        except (BridgeError, OSError) as e:
            with self._lock:
                agent.capture = None
                agent.metrics.record_failure()
                agent.status = "error"
            logger.warning("injection failed: %s", e, extra={"agent_id": agent_id, "op": "inject"})
            self.events.emit("agent-error", {"agent_id": agent_id, "error": str(e)})
            raise

        elapsed = time.time() - started
        with self._lock:
            agent.metrics.record_success(elapsed)
            if agent.status == "busy":
                agent.status = "idle"
        out["duration"] = elapsed
        return out

    def resize_agent(self, agent_id: str, cols: int, rows: int) -> None:
        self._require(agent_id).manager.resize(cols, rows)

    def reset_agent_state(self, agent_id: str, state: str = "ready") -> None:
        agent = self._require(agent_id)
        agent.state.set_state(state)
        with self._lock:
            agent.status = "error" if state == "error" else "idle"

    def set_agent_type(self, agent_id: str, agent_type: Union[str, AgentKind]) -> None:
        agent = self._require(agent_id)
        kind = kind_name(AgentKind.parse(agent_type))
        agent.readiness.set_type(kind)
        agent.state.reset()
        with self._lock:
            agent.config = agent.config.model_copy(update={"type": kind})
        logger.info("agent type set to %s", kind, extra={"agent_id": agent_id})

    def pause_agent(self, agent_id: str) -> None:
        agent = self._require(agent_id)
        with self._lock:
            agent.status = "offline"

    def resume_agent(self, agent_id: str) -> None:
        agent = self._require(agent_id)
        with self._lock:
            agent.status = "idle"

    def set_agent_status(self, agent_id: str, status: AgentStatus) -> None:
        agent = self._require(agent_id)
        with self._lock:
            agent.status = status

    # ------------------------------------------------------------------
    # memory
    # ------------------------------------------------------------------

    def save_to_memory(self, key: str, value: Any) -> None:
        with self._lock:
            self._memory[key] = value
        self.events.emit("memory-saved", {"key": key})

    def load_from_memory(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._memory.get(key, default)

    def memory_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._memory)

    # ------------------------------------------------------------------
    # workflows
    # ------------------------------------------------------------------

    def _pick_agent(self) -> Optional[_Agent]:
        with self._lock:
            for agent in self._agents.values():
                if agent.status == "idle":
                    return agent
        return None

    def execute_workflow(self, workflow: Union[Workflow, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        wf = workflow if isinstance(workflow, Workflow) else Workflow.model_validate(workflow)
        steps = order_steps(wf)
        logger.info("workflow started (%s steps)", len(steps), extra={"workflow_id": wf.id})
        self.events.emit("workflow-started", {"workflow_id": wf.id, "name": wf.name, "steps": [s.id for s in steps]})

        results: Dict[str, Dict[str, Any]] = {}
        for step in steps:
            try:
                results[step.id] = self._run_step(wf, step)
            except WorkflowStepFailure as e:
                logger.error("workflow failed at %s: %s", step.id, e, extra={"workflow_id": wf.id, "step_id": step.id})
                self.events.emit(
                    "workflow-failed",
                    {"workflow_id": wf.id, "step_id": step.id, "error": str(e), "results": dict(results)},
                )
                raise

        logger.info("workflow completed", extra={"workflow_id": wf.id})
        self.events.emit("workflow-completed", {"workflow_id": wf.id, "results": dict(results)})
        return results

    def _run_step(self, wf: Workflow, step: WorkflowStep) -> Dict[str, Any]:
        if step.agent:
            with self._lock:
                agent = self._agents.get(step.agent)
            if agent is None:
                raise WorkflowStepFailure(
                    f"Agent not found for step {step.label()}: {step.agent}",
                    step_id=step.id,
                    details={"workflow_id": wf.id, "agent": step.agent},
                )
        else:
            agent = self._pick_agent()
            if agent is None:
                raise WorkflowStepFailure(
                    f"No suitable agent found for step: {step.label()}",
                    step_id=step.id,
                    details={"workflow_id": wf.id},
                )

        max_attempts = step.max_retries if step.retry_on_error else 1
        attempts = 0
        while True:
            attempts += 1
            prompt = render_prompt(step.prompt, self.memory_snapshot())
            self.events.emit(
                "workflow-step-started",
                {"workflow_id": wf.id, "step_id": step.id, "agent_id": agent.id, "attempt": attempts},
            )
            try:
                res = self.inject_to_agent(
                    agent.id,
                    prompt,
                    wait_for_response=step.capture_output,
                    timeout=step.timeout,
                )
                break
            except (BridgeError, OSError) as e:
                if attempts >= max_attempts:
                    raise WorkflowStepFailure(
                        f"Step {step.label()} failed: {e}",
                        step_id=step.id,
                        details={"workflow_id": wf.id, "agent": agent.id, "attempts": attempts},
                    ) from e
                delay = self.settings.step_retry_delay * attempts
                logger.warning(
                    "step attempt %s failed, retrying in %.1fs: %s",
                    attempts,
                    delay,
                    e,
                    extra={"workflow_id": wf.id, "step_id": step.id},
                )
                self._sleep(delay)

        out: Dict[str, Any] = {"ok": True, "agent": agent.id, "attempts": attempts}
        if step.capture_output:
            out["response"] = res.get("response", "")
        if step.output_key:
            value = out["response"] if step.capture_output else STREAMED_PLACEHOLDER
            self.save_to_memory(step.output_key, value)
            out["output_key"] = step.output_key
        self.events.emit(
            "workflow-step-completed",
            {"workflow_id": wf.id, "step_id": step.id, "agent_id": agent.id, "attempts": attempts},
        )
        return out
