"""Global settings and run files.

Settings live in <home>/settings.yaml (home is $CLIBRIDGE_HOME or
~/.clibridge). Missing keys fall back to the defaults below; loosely typed
values are coerced and clamped. CLIBRIDGE_LOG_LEVEL overrides `log_level`.

A run file is a YAML document naming the agents to spawn and, optionally, a
workflow to execute against them:

    agents:
      - id: sh
        type: shell
        command: /bin/sh
    workflow:
      id: demo
      steps:
        - id: hello
          prompt: echo hello
"""
from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml  # type: ignore

from ..contracts.v1 import AgentConfig, Workflow
from ..paths import clibridge_home
from ..util.conv import coerce_float, coerce_int
from ..util.fs import atomic_write_text

logger = logging.getLogger("clibridge.settings")

_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class Settings:
    log_level: str = "INFO"
    max_agents: int = 10
    default_timeout: float = 30.0
    debounce_ms: int = 100
    cols: int = 80
    rows: int = 24
    output_buffer_bytes: int = 10_000
    typing_speed: int = 300
    stream_throttle_ms: int = 50

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Settings":
        base = cls()
        level = str(d.get("log_level") or base.log_level).strip().upper()
        return cls(
            log_level=level if level in _LOG_LEVELS else base.log_level,
            max_agents=coerce_int(d.get("max_agents"), default=base.max_agents, min_value=1, max_value=100),
            default_timeout=coerce_float(
                d.get("default_timeout"), default=base.default_timeout, min_value=0.1, max_value=3600.0
            ),
            debounce_ms=coerce_int(d.get("debounce_ms"), default=base.debounce_ms, min_value=0, max_value=10_000),
            cols=coerce_int(d.get("cols"), default=base.cols, min_value=10, max_value=1000),
            rows=coerce_int(d.get("rows"), default=base.rows, min_value=5, max_value=1000),
            output_buffer_bytes=coerce_int(
                d.get("output_buffer_bytes"), default=base.output_buffer_bytes, min_value=256, max_value=10_000_000
            ),
            typing_speed=coerce_int(d.get("typing_speed"), default=base.typing_speed, min_value=1, max_value=100_000),
            stream_throttle_ms=coerce_int(
                d.get("stream_throttle_ms"), default=base.stream_throttle_ms, min_value=0, max_value=10_000
            ),
        )


def _settings_path() -> Path:
    return clibridge_home() / "settings.yaml"


def load_settings_doc() -> Dict[str, Any]:
    p = _settings_path()
    if not p.exists():
        return {}
    try:
        doc = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("ignoring unreadable settings file %s: %s", p, e)
        return {}
    return doc if isinstance(doc, dict) else {}


def load_settings() -> Settings:
    """Load settings, applying environment overrides."""
    doc = load_settings_doc()
    env_level = os.environ.get("CLIBRIDGE_LOG_LEVEL", "").strip()
    if env_level:
        doc = dict(doc)
        doc["log_level"] = env_level
    return Settings.from_dict(doc)


def save_settings(settings: Settings) -> None:
    atomic_write_text(_settings_path(), yaml.safe_dump(settings.to_dict(), allow_unicode=True, sort_keys=False))


@dataclass
class RunFile:
    agents: List[AgentConfig] = field(default_factory=list)
    workflow: Optional[Workflow] = None


def parse_run_doc(doc: Any) -> RunFile:
    if not isinstance(doc, dict):
        raise ValueError("run file must be a mapping with an 'agents' list")
    raw_agents = doc.get("agents")
    if not isinstance(raw_agents, list) or not raw_agents:
        raise ValueError("run file needs a non-empty 'agents' list")
    agents = [AgentConfig.model_validate(a) for a in raw_agents]
    seen: Dict[str, bool] = {}
    for a in agents:
        if a.id in seen:
            raise ValueError(f"duplicate agent id in run file: {a.id}")
        seen[a.id] = True
    raw_wf = doc.get("workflow")
    workflow = Workflow.model_validate(raw_wf) if raw_wf else None
    return RunFile(agents=agents, workflow=workflow)


def load_run_file(path: Path) -> RunFile:
    text = Path(path).read_text(encoding="utf-8")
    return parse_run_doc(yaml.safe_load(text))
