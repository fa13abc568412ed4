# /core/errors.py

from typing import Any, Dict, Optional


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestrator."""


# --- Structural: malformed or invalid LLM output ---

class StructuralError(OrchestratorError):
    """LLM output could not be parsed or did not match the expected shape."""


class PromptNormalizationError(StructuralError):
    """Raised when the normalizer gives up on parsing the LLM payload."""

    def __init__(self, message: str, raw_payload: Optional[str] = None):
        super().__init__(message)
        self.raw_payload = raw_payload


class NormalizationCancelled(StructuralError):
    pass


# --- State: well-formed output that violates a semantic rule ---

class StateError(OrchestratorError):
    pass


# --- Execution ---

class ExecutionError(OrchestratorError):
    """A pipeline phase could not complete."""


class ExecutionPlanError(ExecutionError):
    """An execution plan is invalid or one of its operations failed."""

    def __init__(
        self,
        message: str,
        operation_id: Optional[str] = None,
        node_id: Optional[str] = None,
        partial_results: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.operation_id = operation_id
        self.node_id = node_id
        self.partial_results = partial_results or {}


# --- Infrastructure: graph backend, I/O ---

class InfrastructureError(OrchestratorError):
    pass


class GraphStoreNotInitializedError(InfrastructureError):
    def __init__(self, component: str = "Knowledge graph store"):
        super().__init__(f"{component} is not initialized. Call initialize() before use.")
