"""Error taxonomy for probing, mesh persistence and program rewriting."""

from __future__ import annotations


class MeshError(Exception):
    """Base exception for surface mesh errors."""


class ValidationError(MeshError, ValueError):
    """Raised when configuration or grid parameters are unusable."""


class MachineAlarmError(MeshError):
    """Raised when the controller reports an alarm while a run is active."""


class PositionUnavailableError(MeshError):
    """Raised when no usable position can be resolved from machine state."""


class ProbeMissError(MeshError):
    """Raised when a contact-required probe finds no surface."""


class BounceLimitError(ProbeMissError):
    """Raised when a lateral move keeps bouncing without reaching its target."""


class MotionCommandError(MeshError):
    """Raised when the motion command sink rejects a command."""


class PersistenceError(MeshError):
    """Raised when a mesh or settings document cannot be written."""


class RewriteIOError(MeshError):
    """Raised when a program cannot be read or the output cannot be written."""


__all__ = [
    "MeshError",
    "ValidationError",
    "MachineAlarmError",
    "PositionUnavailableError",
    "ProbeMissError",
    "BounceLimitError",
    "MotionCommandError",
    "PersistenceError",
    "RewriteIOError",
]
