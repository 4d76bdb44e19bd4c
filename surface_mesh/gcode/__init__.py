"""G-code analysis and Z-compensation."""

from .analyzer import BoundingBox, LineState, ProgramAnalyzer, Vec3, analyze_lines, bounding_box
from .rewriter import ZCompensationRewriter, compensated_filename

__all__ = [
    "Vec3",
    "BoundingBox",
    "LineState",
    "ProgramAnalyzer",
    "analyze_lines",
    "bounding_box",
    "ZCompensationRewriter",
    "compensated_filename",
]
