from __future__ import annotations

from typing import Optional


class WorkflowError(Exception):
    """Base class for agent workflow failures.

    Each subclass carries a stable ``error_code`` so hosts can map failures to
    user-visible behavior without parsing messages:
    - validation_error: the graph cannot run at all
    - node_error: one node failed; its dependents are short-circuited
    - sandbox_error: a script node failed inside the sandbox
    - dependency_error: an injected collaborator failed or returned nothing
    """

    error_code: str = "workflow_error"

    def __init__(
        self,
        message: str,
        *,
        node_id: Optional[str] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.node_id = node_id
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(WorkflowError):
    """Graph is cyclic, references an unknown node type, or has a dangling edge."""
    error_code = "validation_error"


class NodeExecutionError(WorkflowError):
    """An executor returned or raised a failure."""
    error_code = "node_error"


class SandboxError(NodeExecutionError):
    """Script raised, failed to compile, used a rejected construct, or timed out."""
    error_code = "sandbox_error"


class ExternalDependencyError(NodeExecutionError):
    """Inference call failed or a lookup returned nothing."""
    error_code = "dependency_error"


__all__ = [
    "WorkflowError",
    "ValidationError",
    "NodeExecutionError",
    "SandboxError",
    "ExternalDependencyError",
]
