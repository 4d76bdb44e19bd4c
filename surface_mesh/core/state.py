"""Thread-safe application state container."""

from __future__ import annotations

import threading
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from surface_mesh._logging import get_logger
from surface_mesh.config import MeshSettings
from surface_mesh.probe.planner import SurfaceMesh


_LOGGER = get_logger(__name__)


class ApplyResult(BaseModel):
    """Outcome of one compensation request."""

    request_id: str
    success: bool
    filename: Optional[str] = None
    error: Optional[str] = None


class AppState(BaseModel):
    """Structured data shared between orchestrator and API layers."""

    settings: MeshSettings = Field(default_factory=MeshSettings)
    mesh: Optional[SurfaceMesh] = None
    program_name: Optional[str] = None
    probing: bool = False
    last_probe_error: Optional[str] = None
    last_apply: Optional[ApplyResult] = None

    model_config = ConfigDict(validate_assignment=True)

    @property
    def has_mesh(self) -> bool:
        return self.mesh is not None


def _copy_state(state: AppState) -> AppState:
    """Return a deep copy of ``state``."""

    return state.model_copy(deep=True)


class AppStateStore:
    """Lock-protected wrapper around :class:`AppState`."""

    def __init__(self, initial: Optional[AppState] = None) -> None:
        self._lock = threading.RLock()
        self._state = _copy_state(initial) if initial is not None else AppState()

    def read(self) -> AppState:
        """Return a deep copy of the current state.

        The copy ensures callers cannot mutate the underlying storage without
        going through :meth:`update` or :meth:`mutate`.
        """

        with self._lock:
            return _copy_state(self._state)

    def update(self, **changes: object) -> AppState:
        """Update selected fields atomically and return the new state."""

        with self._lock:
            self._state = _copy_state(self._state.model_copy(update=changes))
            new_state = _copy_state(self._state)
        _LOGGER.debug("AppState updated: %s", sorted(changes))
        return new_state

    def replace(self, new_state: AppState) -> AppState:
        """Replace the entire state with ``new_state``."""

        if not isinstance(new_state, AppState):
            raise TypeError("new_state must be an AppState instance")
        with self._lock:
            self._state = _copy_state(new_state)
            return _copy_state(self._state)

    def mutate(self, mutator: Callable[[AppState], AppState]) -> AppState:
        """Apply ``mutator`` to a copy of the state and store the result.

        Exceptions raised by ``mutator`` leave the stored state untouched.
        """

        with self._lock:
            proposal = mutator(_copy_state(self._state))
            if not isinstance(proposal, AppState):
                raise TypeError("mutator must return AppState instance")
            self._state = _copy_state(proposal)
            return _copy_state(self._state)

    def reset(self) -> AppState:
        """Reset the store to a pristine :class:`AppState` instance."""

        with self._lock:
            self._state = AppState()
            stored = _copy_state(self._state)
        _LOGGER.info("AppState reset to defaults")
        return stored


__all__ = ["ApplyResult", "AppState", "AppStateStore"]
