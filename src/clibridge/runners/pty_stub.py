from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..kernel.errors import NotInitialized, SpawnFailure
from ..kernel.events import EventChannel

PTY_SUPPORTED = False


@dataclass
class PtyConfig:
    command: str
    args: List[str] = field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = field(default_factory=dict)
    cols: int = 80
    rows: int = 24
    max_buffer_bytes: int = 10_000
    name: str = ""


class ProcessManager:
    """Stand-in for platforms without POSIX pseudo-terminals; never spawns."""

    def __init__(self, config: PtyConfig) -> None:
        self.config = config
        self.output: EventChannel[str] = EventChannel("output")
        self.state_change: EventChannel[dict] = EventChannel("state-change")
        self.error: EventChannel[BaseException] = EventChannel("error")
        self.terminated: EventChannel[dict] = EventChannel("terminated")

    def spawn(self) -> None:
        raise SpawnFailure("pseudo-terminals are not supported on this platform")

    def write(self, text: str) -> None:
        raise NotInitialized("PTY not initialized")

    def write_command(self, command: str) -> None:
        raise NotInitialized("PTY not initialized")

    def resize(self, cols: int, rows: int) -> None:
        return None

    def kill(self, sig: int = 15) -> None:
        return None

    def join(self, timeout: Optional[float] = None) -> None:
        return None

    def mark_ready(self) -> None:
        return None

    def mark_error(self, exc: BaseException) -> None:
        return None

    @property
    def state(self) -> str:
        return "initializing"

    @property
    def pid(self) -> Optional[int]:
        return None

    @property
    def size(self) -> tuple[int, int]:
        return (self.config.cols, self.config.rows)

    def is_alive(self) -> bool:
        return False

    def metrics(self) -> Dict[str, Any]:
        return {}

    def recent_bytes(self, max_bytes: int = 0) -> bytes:
        return b""

    def recent_output(self, lines: int = 100) -> str:
        return ""
