"""Modal-state tracking and bounding-box analysis for G-code programs."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Literal, Optional, Tuple

from pydantic import BaseModel

from surface_mesh._logging import get_logger


_LOGGER = get_logger(__name__)

LineKind = Literal["blank", "comment", "machine", "motion"]

_COMMENT_PREFIXES = ("(", ";", "%")
_COMMENT_RE = re.compile(r"\([^)]*\)|;.*$")
_MODE_RE = re.compile(r"G0*(90|91)(?![.\d])", re.IGNORECASE)
_MACHINE_RE = re.compile(r"G0*53(?![.\d])", re.IGNORECASE)
_WORD_RE = re.compile(r"([XYZ])\s*([+-]?(?:\d+\.?\d*|\.\d+))", re.IGNORECASE)


class Vec3(BaseModel):
    """Point in program coordinates."""

    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class BoundingBox(BaseModel):
    """Extent of the motion described by a program."""

    min: Vec3
    max: Vec3
    samples: int = 0

    @property
    def width(self) -> float:
        return self.max.x - self.min.x

    @property
    def height(self) -> float:
        return self.max.y - self.min.y


@dataclass(frozen=True)
class CoordinateWord:
    """Axis word found in the code part of a line."""

    axis: str
    value: float
    span: Tuple[int, int]


@dataclass
class LineState:
    """Classification and modal state of a single program line."""

    raw: str
    kind: LineKind
    absolute: bool
    words: Dict[str, CoordinateWord] = field(default_factory=dict)
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @property
    def has_motion_words(self) -> bool:
        return bool(self.words)


def _comment_spans(line: str) -> List[Tuple[int, int]]:
    return [match.span() for match in _COMMENT_RE.finditer(line)]


def _inside(index: int, spans: List[Tuple[int, int]]) -> bool:
    return any(start <= index < end for start, end in spans)


class ProgramAnalyzer:
    """Track absolute/incremental mode and the running tool position.

    One analyzer instance walks one program; use :func:`analyze_lines` or
    :func:`bounding_box` for a fresh walk.
    """

    def __init__(self) -> None:
        self.absolute = True
        self.x = 0.0
        self.y = 0.0
        self.z = 0.0

    def feed(self, raw: str) -> LineState:
        """Process ``raw`` and return its state after the line is applied."""

        stripped = raw.strip()
        if not stripped:
            return self._state(raw, "blank")
        if stripped.startswith(_COMMENT_PREFIXES):
            return self._state(raw, "comment")

        spans = _comment_spans(raw)
        modes = [
            match.group(1)
            for match in _MODE_RE.finditer(raw)
            if not _inside(match.start(), spans)
        ]
        if modes:
            # Last mode word on the line wins.
            self.absolute = modes[-1] == "90"

        if any(not _inside(m.start(), spans) for m in _MACHINE_RE.finditer(raw)):
            return self._state(raw, "machine")

        words: Dict[str, CoordinateWord] = {}
        for match in _WORD_RE.finditer(raw):
            if _inside(match.start(), spans):
                continue
            axis = match.group(1).upper()
            if axis in words:
                continue
            words[axis] = CoordinateWord(axis, float(match.group(2)), match.span(2))

        for axis, word in words.items():
            current = getattr(self, axis.lower())
            setattr(self, axis.lower(), word.value if self.absolute else current + word.value)

        state = self._state(raw, "motion")
        state.words = words
        return state

    def _state(self, raw: str, kind: LineKind) -> LineState:
        return LineState(raw=raw, kind=kind, absolute=self.absolute, x=self.x, y=self.y, z=self.z)


def analyze_lines(text: str) -> Iterator[LineState]:
    """Yield the modal state of every line of ``text``."""

    analyzer = ProgramAnalyzer()
    for raw in text.split("\n"):
        yield analyzer.feed(raw)


def bounding_box(text: str) -> BoundingBox:
    """Return the X/Y/Z extent of all motion in ``text``.

    Comment, percent and machine-coordinate (G53) lines are ignored.
    """

    lo = [math.inf, math.inf, math.inf]
    hi = [-math.inf, -math.inf, -math.inf]
    samples = 0
    for state in analyze_lines(text):
        if state.kind != "motion" or not state.has_motion_words:
            continue
        samples += 1
        for index, value in enumerate((state.x, state.y, state.z)):
            lo[index] = min(lo[index], value)
            hi[index] = max(hi[index], value)

    lo = [0.0 if value == math.inf else value for value in lo]
    hi = [0.0 if value == -math.inf else value for value in hi]
    bounds = BoundingBox(
        min=Vec3(x=lo[0], y=lo[1], z=lo[2]),
        max=Vec3(x=hi[0], y=hi[1], z=hi[2]),
        samples=samples,
    )
    _LOGGER.debug("Program bounds %s (%d motion lines)", bounds, samples)
    return bounds


__all__ = [
    "Vec3",
    "BoundingBox",
    "CoordinateWord",
    "LineState",
    "ProgramAnalyzer",
    "analyze_lines",
    "bounding_box",
]
