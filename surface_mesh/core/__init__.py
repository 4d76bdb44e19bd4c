"""Core utilities for orchestration and shared state."""

from .orchestrator import CompensationRequest, Orchestrator, OrchestratorError
from .programs import ProgramStore
from .state import ApplyResult, AppState, AppStateStore

__all__ = [
    "Orchestrator",
    "OrchestratorError",
    "CompensationRequest",
    "ProgramStore",
    "ApplyResult",
    "AppState",
    "AppStateStore",
]
