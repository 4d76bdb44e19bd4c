"""Surface probing: grid planning, mesh model, controller and persistence."""

from .controller import (
    AdaptiveProbeController,
    CancellationToken,
    ProbeParams,
    ProbePhase,
    ProbeRunResult,
)
from .planner import GridParams, GridPlanner, GridSpec, MeshPoint, MeshStats, SurfaceMesh
from .store import MeshDocument, MeshStore

__all__ = [
    "GridSpec",
    "GridParams",
    "GridPlanner",
    "MeshPoint",
    "MeshStats",
    "SurfaceMesh",
    "AdaptiveProbeController",
    "CancellationToken",
    "ProbeParams",
    "ProbePhase",
    "ProbeRunResult",
    "MeshDocument",
    "MeshStore",
]
