from __future__ import annotations

import argparse
import json
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, TextIO

import yaml  # type: ignore

from . import __version__
from .contracts.v1 import AgentConfig
from .daemon.orchestrator import Orchestrator, OrchestratorSettings
from .kernel.errors import BridgeError
from .kernel.settings import Settings, load_run_file, load_settings
from .util.batcher import StreamBatcher
from .util.obslog import setup_root_json_logging
from .util.sanitize import CLEAR_SCREEN_MARKER, OutputSanitizer


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2))


def _error(code: str, message: str) -> Dict[str, Any]:
    return {"ok": False, "error": {"code": code, "message": message}}


def _orchestrator_settings(s: Settings) -> OrchestratorSettings:
    return OrchestratorSettings(
        max_agents=s.max_agents,
        default_timeout=s.default_timeout,
        debounce_ms=s.debounce_ms,
        cols=s.cols,
        rows=s.rows,
        output_buffer_bytes=s.output_buffer_bytes,
        typing_speed=s.typing_speed,
    )


class _OutputStreamer:
    """Sanitize and batch agent output onto a text stream, one prefix per batch."""

    def __init__(self, orch: Orchestrator, stream: TextIO, *, throttle_ms: int) -> None:
        self._stream = stream
        self._throttle_ms = throttle_ms
        self._lock = threading.Lock()
        self._per_agent: Dict[str, StreamBatcher] = {}
        self._sanitizers: Dict[str, OutputSanitizer] = {}
        self._unsubscribe = orch.events.on("agent-output", self._on_output)

    def _batcher(self, agent_id: str) -> StreamBatcher:
        with self._lock:
            b = self._per_agent.get(agent_id)
            if b is None:
                b = StreamBatcher(lambda chunk: self._write(agent_id, chunk), throttle_ms=self._throttle_ms)
                self._per_agent[agent_id] = b
                self._sanitizers[agent_id] = OutputSanitizer()
            return b

    def _on_output(self, ev: Dict[str, Any]) -> None:
        agent_id = str(ev.get("agent_id") or "")
        self._batcher(agent_id).push(str(ev.get("data") or ""))

    def _write(self, agent_id: str, chunk: str) -> None:
        with self._lock:
            sanitizer = self._sanitizers[agent_id]
            text = sanitizer.sanitize(chunk).replace(CLEAR_SCREEN_MARKER, "").replace("\r\n", "\n")
            self._stream.write("".join(f"[{agent_id}] {line}\n" for line in text.splitlines() if line.strip()))
            self._stream.flush()

    def close(self) -> None:
        self._unsubscribe()
        with self._lock:
            batchers = list(self._per_agent.values())
        for b in batchers:
            b.close()


def cmd_version(_: argparse.Namespace) -> int:
    print(__version__)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_root_json_logging(component="cli", level=settings.log_level)
    try:
        run = load_run_file(Path(args.file))
    except (OSError, ValueError, yaml.YAMLError) as e:
        _print_json(_error("invalid_run_file", str(e)))
        return 1

    orch = Orchestrator(_orchestrator_settings(settings))
    streamer: Optional[_OutputStreamer] = None
    if not args.no_output:
        streamer = _OutputStreamer(orch, sys.stderr, throttle_ms=settings.stream_throttle_ms)
    try:
        for cfg in run.agents:
            orch.spawn_agent(cfg)
        ready: Dict[str, bool] = {}
        if args.wait_ready and args.wait_ready > 0:
            for cfg in run.agents:
                ready[cfg.id] = orch.wait_for_ready(cfg.id, float(args.wait_ready))
        results = orch.execute_workflow(run.workflow) if run.workflow is not None else {}
        _print_json(
            {
                "ok": True,
                "result": {
                    "agents": [a.model_dump() for a in orch.list_agents()],
                    "ready": ready,
                    "results": results,
                    "memory": orch.memory_snapshot(),
                },
            }
        )
        return 0
    except BridgeError as e:
        _print_json({"ok": False, "error": e.to_info().model_dump()})
        return 1
    finally:
        orch.shutdown()
        if streamer is not None:
            streamer.close()


def cmd_chat(args: argparse.Namespace) -> int:
    settings = load_settings()
    setup_root_json_logging(component="cli", level=settings.log_level)
    command: List[str] = list(args.command or [])
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        _print_json(_error("missing_command", "usage: clibridge chat --type TYPE -- COMMAND [ARGS...]"))
        return 1

    orch = Orchestrator(_orchestrator_settings(settings))
    streamer = _OutputStreamer(orch, sys.stdout, throttle_ms=settings.stream_throttle_ms)
    try:
        cfg = AgentConfig(id=args.id, type=args.type, command=command[0], args=command[1:])
        orch.spawn_agent(cfg)
        for line in sys.stdin:
            orch.inject_to_agent(cfg.id, line.rstrip("\r\n"))
        return 0
    except BridgeError as e:
        _print_json({"ok": False, "error": e.to_info().model_dump()})
        return 1
    finally:
        orch.shutdown()
        streamer.close()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clibridge", description="Drive interactive AI CLIs through pseudo-terminals")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_version = sub.add_parser("version", help="Print the installed version")
    p_version.set_defaults(func=cmd_version)

    p_run = sub.add_parser("run", help="Spawn the agents in a run file and execute its workflow")
    p_run.add_argument("file", help="YAML run file (agents: [...], workflow: {...})")
    p_run.add_argument("--no-output", action="store_true", help="Do not stream agent output to stderr")
    p_run.add_argument(
        "--wait-ready",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="Wait up to SECONDS for each agent's prompt before running the workflow",
    )
    p_run.set_defaults(func=cmd_run)

    p_chat = sub.add_parser("chat", help="Forward stdin lines to one spawned CLI")
    p_chat.add_argument("--type", default="custom", help="Agent type used for prompt detection (default: custom)")
    p_chat.add_argument("--id", default="chat", help="Agent id (default: chat)")
    p_chat.add_argument("command", nargs=argparse.REMAINDER, help="-- COMMAND [ARGS...]")
    p_chat.set_defaults(func=cmd_chat)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
