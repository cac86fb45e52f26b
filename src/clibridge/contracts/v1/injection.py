from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class InjectionOptions(BaseModel):
    human_like: bool = False
    typing_speed: int = Field(default=300, ge=1)  # characters per minute
    wait_for_ready: bool = False
    timeout: float = Field(default=30.0, gt=0)  # seconds
    confirm_with_enter: bool = True
    raw: bool = False
    enter_sequence: str = "\r"

    model_config = ConfigDict(extra="forbid")


class InjectionResult(BaseModel):
    id: str
    agent: str
    success: bool
    injected_text: str
    duration: float
    attempts: int = 1
    error: Optional[str] = None

    model_config = ConfigDict(extra="forbid")
