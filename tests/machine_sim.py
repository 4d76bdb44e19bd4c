"""In-memory machine used by controller, orchestrator and API tests."""

from __future__ import annotations

import math
import re
import threading
from typing import Callable, List, Optional

from surface_mesh.probe.machine import (
    CommandResult,
    MachinePositionWithOffset,
    MachineSnapshot,
    MachineStatus,
    Position,
    WorkPosition,
)

_MOVE_RE = re.compile(r"^(G38\.2|G38\.3|G1)\s+([XYZ])(-?\d+\.?\d*)\s+F\d+$")
_STEP = 0.05


class SimulatedMachine:
    """Probe-equipped machine over a height function ``surface(x, y)``.

    Implements both the motion sink and the machine state source. Positions
    are reported as WPos, or as MPos plus WCO when ``wco`` is given. With
    ``report_pins=False`` the probe pin is never reported.
    """

    def __init__(
        self,
        surface: Callable[[float, float], float],
        start: tuple = (0.0, 0.0, 5.0),
        *,
        wco: Optional[tuple] = None,
        report_pins: bool = True,
        alarm_after: Optional[str] = None,
    ) -> None:
        self.surface = surface
        self.x, self.y, self.z = (float(v) for v in start)
        self.wco = wco
        self.report_pins = report_pins
        self.alarm_after = alarm_after
        self.triggered = False
        self.alarm = False
        self.commands: List[str] = []
        self.tags: List[str] = []
        self._lock = threading.Lock()

    # Motion sink ---------------------------------------------------------------
    def send_command(self, command: str, tag: str = "") -> CommandResult:
        with self._lock:
            self.commands.append(command)
            self.tags.append(tag)
            if self.alarm:
                return CommandResult.failure("error:9")
            if command == "G90":
                return CommandResult.success()
            match = _MOVE_RE.match(command)
            if not match:
                return CommandResult.failure("error:20")
            kind, axis, value = match.group(1), match.group(2), float(match.group(3))
            if kind == "G38.3":
                self._lateral(axis, value)
            elif kind == "G38.2":
                self._plunge(value)
            else:
                self.z = value
                self.triggered = self._in_contact()
            if self.alarm_after and command.startswith(self.alarm_after):
                self.alarm = True
            return CommandResult.success()

    # Machine state source ------------------------------------------------------
    def machine_state(self) -> MachineSnapshot:
        with self._lock:
            work = Position(x=self.x, y=self.y, z=self.z)
            if self.wco is None:
                report = WorkPosition(wpos=work)
            else:
                wco = Position(x=self.wco[0], y=self.wco[1], z=self.wco[2])
                mpos = Position(x=work.x + wco.x, y=work.y + wco.y, z=work.z + wco.z)
                report = MachinePositionWithOffset(mpos=mpos, wco=wco)
            return MachineSnapshot(
                status=MachineStatus.ALARM if self.alarm else MachineStatus.IDLE,
                position=report,
                probe_triggered=self.triggered if self.report_pins else None,
                raw="ALARM:4" if self.alarm else "Idle",
            )

    # Simulation ----------------------------------------------------------------
    def _in_contact(self) -> bool:
        return self.surface(self.x, self.y) >= self.z

    def _lateral(self, axis: str, target: float) -> None:
        start = self.x if axis == "X" else self.y
        steps = max(1, int(math.ceil(abs(target - start) / _STEP)))
        self.triggered = False
        for index in range(1, steps + 1):
            value = start + (target - start) * index / steps
            if axis == "X":
                self.x = value
            else:
                self.y = value
            if self._in_contact():
                self.triggered = True
                return

    def _plunge(self, target: float) -> None:
        height = self.surface(self.x, self.y)
        if height >= target:
            self.z = min(self.z, height)
            self.triggered = True
        else:
            self.z = target
            self.triggered = False


def flat(height: float) -> Callable[[float, float], float]:
    return lambda x, y: height


def step_at_x(edge: float, low: float, high: float) -> Callable[[float, float], float]:
    return lambda x, y: high if x >= edge - 1e-9 else low
