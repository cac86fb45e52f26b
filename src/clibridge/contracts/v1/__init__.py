from __future__ import annotations

from .agent import AgentConfig, AgentInfo, AgentMetrics, AgentStatus
from .detection import DetectionResult, ReadinessResult
from .error import ErrorInfo
from .injection import InjectionOptions, InjectionResult
from .workflow import Workflow, WorkflowStep

__all__ = [
    "AgentConfig",
    "AgentInfo",
    "AgentMetrics",
    "AgentStatus",
    "DetectionResult",
    "ErrorInfo",
    "InjectionOptions",
    "InjectionResult",
    "ReadinessResult",
    "Workflow",
    "WorkflowStep",
]
