from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ...util.time import utc_now_iso


AgentStatus = Literal["idle", "busy", "error", "offline"]


class AgentConfig(BaseModel):
    """Spawn configuration for one CLI agent."""

    v: int = 1
    id: str
    name: str = ""
    type: str = "custom"
    command: str
    args: List[str] = Field(default_factory=list)
    cwd: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    cols: Optional[int] = None
    rows: Optional[int] = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("id", "command")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        s = str(v or "").strip()
        if not s:
            raise ValueError("must not be empty")
        return s

    @field_validator("type")
    @classmethod
    def _normalize_type(cls, v: str) -> str:
        return str(v or "").strip().lower() or "custom"

    def display_name(self) -> str:
        return self.name.strip() or self.id


class AgentMetrics(BaseModel):
    tasks_completed: int = 0
    tasks_failed: int = 0
    average_response_time: float = 0.0
    last_activity: float = Field(default_factory=time.time)
    created_at: float = Field(default_factory=time.time)

    model_config = ConfigDict(extra="forbid")

    def record_success(self, elapsed: float) -> None:
        self.tasks_completed += 1
        n = self.tasks_completed
        self.average_response_time = (self.average_response_time * (n - 1) + elapsed) / n
        self.last_activity = time.time()

    def record_failure(self) -> None:
        self.tasks_failed += 1
        self.last_activity = time.time()


class AgentInfo(BaseModel):
    id: str
    name: str
    type: str
    status: AgentStatus
    state: str
    ready: bool
    pid: Optional[int] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    last_prompt: Optional[str] = None
    last_response: Optional[str] = None
    spawned_at: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="forbid")
