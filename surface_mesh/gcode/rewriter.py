"""Z-compensation of G-code programs against a probed surface mesh."""

from __future__ import annotations

import math
from pathlib import PurePath
from typing import TYPE_CHECKING, Iterable, Iterator, List, Optional

from surface_mesh._logging import get_logger
from surface_mesh.gcode.analyzer import ProgramAnalyzer

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from surface_mesh.probe.planner import SurfaceMesh


_LOGGER = get_logger(__name__)

COMPENSATED_SUFFIX = "_compensated.nc"
DEFAULT_PROGRAM_NAME = "program.nc"


def compensated_filename(filename: Optional[str]) -> str:
    """``part.gcode`` -> ``part_compensated.nc``."""

    name = PurePath(filename or DEFAULT_PROGRAM_NAME).name
    stem = name.rsplit(".", 1)[0] if "." in name[1:] else name
    return stem + COMPENSATED_SUFFIX


class ZCompensationRewriter:
    """Shift absolute Z words by the mesh height relative to ``reference_z``."""

    def __init__(self, mesh: SurfaceMesh, reference_z: float = 0.0) -> None:
        if not math.isfinite(reference_z):
            raise ValueError("reference_z must be finite")
        self._mesh = mesh
        self._reference_z = float(reference_z)

    def header(self) -> List[str]:
        grid = self._mesh.grid
        return [
            "(Z-compensated G-code generated by surface-mesh)",
            f"(Grid: {grid.cols} x {grid.rows} points)",
            f"(Reference Z: {self._reference_z:.3f})",
            "",
        ]

    def offset_at(self, x: float, y: float) -> float:
        return self._mesh.height_at(x, y) - self._reference_z

    def rewrite_lines(self, lines: Iterable[str]) -> Iterator[str]:
        """Yield the header followed by every line, compensated where needed."""

        yield from self.header()
        analyzer = ProgramAnalyzer()
        changed = 0
        for raw in lines:
            state = analyzer.feed(raw)
            word = state.words.get("Z")
            if state.kind != "motion" or word is None or not state.absolute:
                yield raw
                continue
            compensated = word.value + self.offset_at(state.x, state.y)
            start, end = word.span
            changed += 1
            yield f"{raw[:start]}{compensated:.3f}{raw[end:]}"
        _LOGGER.info("Compensated %d Z words (reference Z %.3f)", changed, self._reference_z)

    def rewrite(self, text: str) -> str:
        return "\n".join(self.rewrite_lines(text.split("\n")))


__all__ = [
    "COMPENSATED_SUFFIX",
    "DEFAULT_PROGRAM_NAME",
    "ZCompensationRewriter",
    "compensated_filename",
]
