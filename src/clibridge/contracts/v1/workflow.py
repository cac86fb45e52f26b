from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class WorkflowStep(BaseModel):
    id: str
    name: str = ""
    prompt: str
    agent: Optional[str] = None
    depends_on: List[str] = Field(default_factory=list)
    output_key: Optional[str] = None
    retry_on_error: bool = False
    max_retries: int = Field(default=3, ge=1)
    timeout: Optional[float] = Field(default=None, gt=0)
    capture_output: bool = False

    model_config = ConfigDict(extra="forbid")

    def label(self) -> str:
        return self.name.strip() or self.id


class Workflow(BaseModel):
    id: str
    name: str = ""
    description: str = ""
    steps: List[WorkflowStep] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")
