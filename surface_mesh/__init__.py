"""Surface-mesh probing and G-code Z compensation."""

from .config import MeshSettings
from .core.orchestrator import Orchestrator
from .core.state import AppState, AppStateStore
from .gcode.rewriter import ZCompensationRewriter
from .probe.controller import AdaptiveProbeController
from .probe.planner import SurfaceMesh
from .sender.service import SenderService

__all__ = [
    "SenderService",
    "Orchestrator",
    "AppState",
    "AppStateStore",
    "MeshSettings",
    "AdaptiveProbeController",
    "SurfaceMesh",
    "ZCompensationRewriter",
]
