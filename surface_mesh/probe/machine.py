"""Machine-state boundary types for the probing controller.

The motion controller reports tool location in one of three shapes: work
position directly, machine position plus a work-coordinate offset, or
machine position alone. They are modelled as a closed variant and resolved
once into a :class:`Position` before the core sees them.
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Optional, Protocol, Union

from pydantic import BaseModel, ConfigDict

from surface_mesh.errors import PositionUnavailableError


class Position(BaseModel):
    """Canonical tool position in work coordinates."""

    x: float
    y: float
    z: float

    model_config = ConfigDict(frozen=True)

    def __sub__(self, other: "Position") -> "Position":
        return Position(x=self.x - other.x, y=self.y - other.y, z=self.z - other.z)


class WorkPosition(BaseModel):
    wpos: Position

    model_config = ConfigDict(frozen=True)


class MachinePositionWithOffset(BaseModel):
    mpos: Position
    wco: Position

    model_config = ConfigDict(frozen=True)


class MachinePositionOnly(BaseModel):
    mpos: Position

    model_config = ConfigDict(frozen=True)


PositionReport = Union[WorkPosition, MachinePositionWithOffset, MachinePositionOnly]


class MachineStatus(str, Enum):
    """Coarse run status categories."""

    IDLE = "Idle"
    RUNNING = "Running"
    ALARM = "Alarm"
    OTHER = "Other"

    @classmethod
    def from_grbl(cls, state: Optional[str]) -> "MachineStatus":
        """Map a GRBL state word (``Idle``, ``Run``, ``Alarm``, ...) to a category."""

        if not state:
            return cls.OTHER
        word = state.split(":", 1)[0].strip().lower()
        if word == "idle":
            return cls.IDLE
        if word in {"run", "jog", "home"}:
            return cls.RUNNING
        if word == "alarm":
            return cls.ALARM
        return cls.OTHER


class MachineSnapshot(BaseModel):
    """Status and position report captured from the machine."""

    status: MachineStatus
    position: Optional[PositionReport] = None
    probe_triggered: Optional[bool] = None
    raw: str = ""

    model_config = ConfigDict(frozen=True)


class CommandResult(BaseModel):
    """Outcome of sending a single command to the motion controller."""

    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "CommandResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "CommandResult":
        return cls(ok=False, error=error)


class MotionSink(Protocol):
    """Accepts textual motion commands."""

    def send_command(self, command: str, tag: str) -> CommandResult:
        ...


class MachineStateSource(Protocol):
    """Provides the current machine status and position."""

    def machine_state(self) -> MachineSnapshot:
        ...


def resolve_position(report: Optional[PositionReport]) -> Position:
    """Collapse a position report into work coordinates."""

    if isinstance(report, WorkPosition):
        return report.wpos
    if isinstance(report, MachinePositionWithOffset):
        return report.mpos - report.wco
    if isinstance(report, MachinePositionOnly):
        return report.mpos
    raise PositionUnavailableError("Machine state does not contain a usable position")


# ---------------------------------------------------------------------------
# GRBL status reports
# ---------------------------------------------------------------------------
_STATUS_RE = re.compile(r"^<(?P<state>[A-Za-z]+(?::\d+)?)(?:\|(?P<extra>.*))?>$")
_FIELD_RE = re.compile(r"^(?P<key>[A-Za-z]+):(?P<value>.*)$")
_PRB_RE = re.compile(r"\[PRB:(?P<values>[-0-9.,]+):(?P<ok>[01])\]")


def parse_position(data: Optional[str]) -> Optional[Position]:
    """Parse ``"x,y,z[,a...]"``; ``None`` when fewer than three numbers."""

    if not data:
        return None
    try:
        parts = [float(value) for value in data.split(",") if value.strip()]
    except ValueError:
        return None
    if len(parts) < 3:
        return None
    return Position(x=parts[0], y=parts[1], z=parts[2])


def parse_status_fields(line: str) -> Optional[tuple[str, dict]]:
    """Split ``<State|Key:value|...>`` into the state word and its fields."""

    match = _STATUS_RE.match(line.strip())
    if not match:
        return None
    fields = {}
    for chunk in (match.group("extra") or "").split("|"):
        field = _FIELD_RE.match(chunk)
        if field:
            fields[field.group("key")] = field.group("value")
    return match.group("state"), fields


def build_snapshot(
    state: Optional[str],
    wpos: Optional[Position] = None,
    mpos: Optional[Position] = None,
    wco: Optional[Position] = None,
    pins: Optional[str] = None,
    raw: str = "",
) -> MachineSnapshot:
    """Assemble a :class:`MachineSnapshot` preferring WPos, then MPos-WCO, then MPos."""

    report: Optional[PositionReport] = None
    if wpos is not None:
        report = WorkPosition(wpos=wpos)
    elif mpos is not None and wco is not None:
        report = MachinePositionWithOffset(mpos=mpos, wco=wco)
    elif mpos is not None:
        report = MachinePositionOnly(mpos=mpos)
    return MachineSnapshot(
        status=MachineStatus.from_grbl(state),
        position=report,
        probe_triggered=None if pins is None else "P" in pins,
        raw=raw,
    )


def parse_prb(line: str) -> Optional[tuple[Position, bool]]:
    """Parse a GRBL ``[PRB:x,y,z:ok]`` report."""

    match = _PRB_RE.search(line)
    if not match:
        return None
    position = parse_position(match.group("values"))
    if position is None:
        return None
    return position, match.group("ok") == "1"


__all__ = [
    "Position",
    "WorkPosition",
    "MachinePositionWithOffset",
    "MachinePositionOnly",
    "PositionReport",
    "MachineStatus",
    "MachineSnapshot",
    "CommandResult",
    "MotionSink",
    "MachineStateSource",
    "resolve_position",
    "parse_position",
    "parse_status_fields",
    "build_snapshot",
    "parse_prb",
]
