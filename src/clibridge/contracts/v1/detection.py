from __future__ import annotations

import time
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class DetectionResult(BaseModel):
    state: str
    confidence: float
    pattern: str = ""
    match: str = ""
    timestamp: float = Field(default_factory=time.time)

    model_config = ConfigDict(extra="forbid", frozen=True)


class ReadinessResult(BaseModel):
    ready: bool
    agent_type: str
    match: Optional[str] = None
    confidence: float
    timestamp: float = Field(default_factory=time.time)

    model_config = ConfigDict(extra="forbid", frozen=True)
