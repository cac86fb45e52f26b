from __future__ import annotations

from typing import Any, Dict, Optional

from ..contracts.v1 import ErrorInfo


class BridgeError(Exception):
    """Base error for every failure clibridge surfaces to callers."""

    code = "bridge_error"

    def __init__(self, message: str, *, code: str = "", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.code = code or type(self).code
        self.message = message
        self.details = details or {}

    def to_info(self) -> ErrorInfo:
        return ErrorInfo(code=self.code, message=self.message, details=dict(self.details))


class SpawnFailure(BridgeError):
    """The OS could not create the pseudo-terminal process."""

    code = "spawn_failed"


class NotInitialized(BridgeError):
    code = "not_initialized"


class AlreadyTerminated(BridgeError):
    code = "already_terminated"


class AgentNotFound(BridgeError):
    code = "agent_not_found"

    def __init__(self, agent: str):
        super().__init__(f"Agent not found: {agent}", details={"agent": agent})
        self.agent = agent


class AgentExists(BridgeError):
    code = "agent_exists"

    def __init__(self, agent_id: str):
        super().__init__(f"Agent exists: {agent_id}", details={"agent_id": agent_id})
        self.agent_id = agent_id


class InjectionFailure(BridgeError):
    code = "injection_failed"


class InjectionTimeout(InjectionFailure):
    code = "injection_timeout"


class WorkflowError(BridgeError):
    """The workflow definition itself is invalid."""

    code = "workflow_invalid"


class WorkflowStepFailure(BridgeError):
    code = "workflow_step_failed"

    def __init__(self, message: str, *, step_id: str, details: Optional[Dict[str, Any]] = None):
        merged = {"step_id": step_id}
        merged.update(details or {})
        super().__init__(message, details=merged)
        self.step_id = step_id


class OrchestratorError(BridgeError):
    code = "orchestrator_error"
