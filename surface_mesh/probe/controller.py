"""Adaptive surface-probing controller.

The controller visits every grid point in row-major order using only
probe-class lateral moves (``G38.3``), contact-required plunges (``G38.2``)
and upward linear retracts (``G1``). A lateral move that trips the probe
before reaching its target is treated as a bounce: the tool retracts just
above the contact and the move is reissued.
"""

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from surface_mesh._logging import get_logger
from surface_mesh.errors import (
    BounceLimitError,
    MachineAlarmError,
    MotionCommandError,
    ProbeMissError,
    ValidationError,
)
from surface_mesh.gcode.analyzer import BoundingBox
from surface_mesh.probe.machine import (
    MachineSnapshot,
    MachineStateSource,
    MachineStatus,
    MotionSink,
    resolve_position,
)
from surface_mesh.probe.planner import GridParams, GridPlanner, GridSpec, SurfaceMesh

if TYPE_CHECKING:  # pragma: no cover - import cycle guard
    from surface_mesh.config import MeshSettings


_LOGGER = get_logger(__name__)

EventCallback = Callable[[Dict[str, object]], None]


class ProbeParams(BaseModel):
    """Parameters controlling the probing motion."""

    probe_feed_rate: float = Field(default=100.0, gt=0)
    travel_feed_rate: float = Field(default=2000.0, gt=0)
    clearance_height: float = Field(default=5.0, gt=0)
    max_plunge: float = Field(default=20.0, gt=0)
    descending_clearance: float = Field(default=1.0, gt=0)
    tolerance: float = Field(default=0.1, gt=0)
    max_bounces: int = Field(default=25, ge=1)
    poll_interval: float = Field(default=0.1, gt=0)
    settle_timeout: float = Field(default=10.0, gt=0)

    model_config = ConfigDict(frozen=True, allow_inf_nan=False)


class ProbePhase(str, Enum):
    IDLE = "idle"
    POSITIONING = "positioning"
    BOUNCED = "bounced"
    PRE_PLUNGE_CLEAR = "pre_plunge_clear"
    PLUNGING = "plunging"
    RECORDING = "recording"
    ROW_TRANSITION = "row_transition"
    NEXT_POINT = "next_point"
    RETRACTING = "retracting"
    COMPLETED = "completed"
    ABORTED = "aborted"


class CancellationToken:
    """Cooperative stop request checked between probing steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class ProbeSample:
    """Resolved position after a motion settled."""

    x: float
    y: float
    z: float
    triggered: Optional[bool] = None

    def axis(self, name: str) -> float:
        return getattr(self, name.lower())


@dataclass
class ProbeRunState:
    """Mutable bookkeeping for a single run."""

    row: int = 0
    col: int = 0
    phase: ProbePhase = ProbePhase.IDLE
    last_probed_z: Optional[float] = None
    row_highest_z: Optional[float] = None
    mesh_highest_z: Optional[float] = None
    completed_points: int = 0


class ProbeRunResult(BaseModel):
    """Outcome of a probing run that was not aborted by an error."""

    mesh: SurfaceMesh
    completed_points: int
    total_points: int
    stopped: bool
    phase: ProbePhase


def _fmt(value: float) -> str:
    return f"{value:.3f}"


class AdaptiveProbeController:
    """Probe a grid of points with bounce-on-hit lateral navigation.

    Only one controller may drive a given machine at a time; the caller
    enforces that. The controller owns the mesh it builds until the run
    finishes. On a fatal error the partially populated mesh stays available
    as :attr:`mesh`.
    """

    def __init__(
        self,
        sink: MotionSink,
        source: MachineStateSource,
        params: Optional[ProbeParams] = None,
        *,
        on_event: Optional[EventCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._sink = sink
        self._source = source
        self._params = params or ProbeParams()
        self._on_event = on_event
        self._sleep = sleep
        self._clock = clock
        self._state = ProbeRunState()
        self._last_sample: Optional[ProbeSample] = None
        self.mesh: Optional[SurfaceMesh] = None

    @property
    def params(self) -> ProbeParams:
        return self._params

    @property
    def phase(self) -> ProbePhase:
        return self._state.phase

    @property
    def completed_points(self) -> int:
        return self._state.completed_points

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def run_from_settings(
        self,
        settings: "MeshSettings",
        bounds: Optional[BoundingBox] = None,
        token: Optional[CancellationToken] = None,
    ) -> ProbeRunResult:
        """Plan the grid from ``settings`` and probe it."""

        spec = GridPlanner.plan(settings, bounds)
        return self.run(spec, token)

    def run(self, spec: GridSpec, token: Optional[CancellationToken] = None) -> ProbeRunResult:
        """Probe every point of ``spec`` anchored at the current tool position."""

        self._validate(spec)
        token = token or CancellationToken()
        state = self._state = ProbeRunState()
        self._last_sample = None
        self.mesh = None

        try:
            self._command("G90", "mode")
            start = self._sample()
            grid = spec.anchored_at(start.x, start.y)
            mesh = self.mesh = SurfaceMesh.empty(grid)
            _LOGGER.info(
                "Probing %dx%d grid from X=%.3f Y=%.3f (spacing %.3f, %.3f)",
                grid.cols,
                grid.rows,
                grid.start_x,
                grid.start_y,
                grid.spacing_x,
                grid.spacing_y,
            )

            stopped = False
            for row in range(grid.rows):
                for col in range(grid.cols):
                    if token.cancelled or not self._probe_point(grid, row, col, token):
                        stopped = True
                        break
                if stopped:
                    break

            if stopped:
                _LOGGER.info(
                    "Probing stopped after %d of %d points",
                    state.completed_points,
                    spec.total_points,
                )
                state.phase = ProbePhase.ABORTED
                self._emit("stopped")
            else:
                self._finish(grid, token)
                mesh.freeze()
                state.phase = ProbePhase.COMPLETED
                self._emit("completed")
                _LOGGER.info("Probing complete: %d points captured", state.completed_points)
        except Exception as exc:
            state.phase = ProbePhase.ABORTED
            _LOGGER.error(
                "Probing aborted at point (%d,%d): %s", state.row + 1, state.col + 1, exc
            )
            self._emit("error", message=str(exc))
            raise

        return ProbeRunResult(
            mesh=mesh,
            completed_points=state.completed_points,
            total_points=spec.total_points,
            stopped=stopped,
            phase=state.phase,
        )

    # ------------------------------------------------------------------
    # Per-point sequence
    # ------------------------------------------------------------------
    def _probe_point(self, grid: GridParams, row: int, col: int, token: CancellationToken) -> bool:
        """Navigate to, plunge and record one point; ``False`` if stopped en route."""

        state = self._state
        params = self._params
        state.row, state.col = row, col
        x, y = grid.point(row, col)

        if row or col:
            if col == 0:
                state.phase = ProbePhase.ROW_TRANSITION
                base = state.row_highest_z if state.row_highest_z is not None else state.last_probed_z
                self._emit("row", target_y=y)
                self._retract((base or 0.0) + params.clearance_height)
                state.row_highest_z = None
                if not self._lateral("X", grid.start_x, token):
                    return False
                if not self._lateral("Y", y, token):
                    return False
            else:
                state.phase = ProbePhase.NEXT_POINT
                if not self._lateral("X", x, token):
                    return False

            sample = self._sample()
            if sample.triggered is not False:
                # G38.2 while already in contact faults the controller.
                state.phase = ProbePhase.PRE_PLUNGE_CLEAR
                self._retract(sample.z + params.clearance_height)

        state.phase = ProbePhase.PLUNGING
        z = self._plunge()

        state.phase = ProbePhase.RECORDING
        self.mesh.record(row, col, z)
        descending = state.last_probed_z is not None and z < state.last_probed_z
        clearance = params.descending_clearance if descending else params.clearance_height
        state.last_probed_z = z
        if state.row_highest_z is None or z > state.row_highest_z:
            state.row_highest_z = z
        if state.mesh_highest_z is None or z > state.mesh_highest_z:
            state.mesh_highest_z = z
        state.completed_points += 1
        _LOGGER.info(
            "Point (%d,%d) Z=%.3f (%s)",
            row + 1,
            col + 1,
            z,
            "descending" if descending else "ascending",
        )
        self._emit("point", z=z, descending=descending)
        self._retract(z + clearance)
        return True

    def _finish(self, grid: GridParams, token: CancellationToken) -> None:
        """Clear the highest probed point and return to the starting corner."""

        state = self._state
        state.phase = ProbePhase.RETRACTING
        if state.mesh_highest_z is None:
            return
        self._retract(state.mesh_highest_z + self._params.clearance_height)
        self._lateral("X", grid.start_x, token)
        self._lateral("Y", grid.start_y, token)

    # ------------------------------------------------------------------
    # Motion primitives
    # ------------------------------------------------------------------
    def _lateral(self, axis: str, target: float, token: CancellationToken) -> bool:
        """Probe-toward move along ``axis`` with bounce-on-hit; ``False`` if stopped."""

        params = self._params
        last = self._last_sample
        if last is not None and abs(last.axis(axis) - target) <= params.tolerance:
            return True

        if self._state.phase not in (ProbePhase.ROW_TRANSITION, ProbePhase.RETRACTING):
            self._state.phase = ProbePhase.POSITIONING
        command = f"G38.3 {axis}{_fmt(target)} F{params.travel_feed_rate:.0f}"
        self._command(command, "lateral")
        sample = self._sample()

        bounces = 0
        while abs(sample.axis(axis) - target) > params.tolerance:
            if token.cancelled:
                return False
            bounces += 1
            if bounces > params.max_bounces:
                raise BounceLimitError(
                    f"Lateral {axis} move to {target:.3f} still blocked after "
                    f"{params.max_bounces} bounces (at {axis}={sample.axis(axis):.3f})"
                )
            self._state.phase = ProbePhase.BOUNCED
            _LOGGER.info(
                "Lateral %s hit at %s=%.3f Z=%.3f - bouncing",
                axis,
                axis,
                sample.axis(axis),
                sample.z,
            )
            self._emit("bounce", axis=axis, at=sample.axis(axis), hit_z=sample.z)
            self._retract(sample.z + params.clearance_height)
            self._command(command, "lateral")
            sample = self._sample()
        return True

    def _retract(self, target_z: float) -> None:
        """Upward linear move to ``target_z``, skipped when already there."""

        if not math.isfinite(target_z):
            raise ValidationError(f"Retract target is not finite: {target_z}")
        last = self._last_sample
        if last is not None and abs(last.z - target_z) <= self._params.tolerance:
            return
        self._command(f"G1 Z{_fmt(target_z)} F{self._params.travel_feed_rate:.0f}", "retract")
        self._sample()

    def _plunge(self) -> float:
        """Contact-required probe downward by at most ``max_plunge``."""

        params = self._params
        before = self._sample()
        target = before.z - params.max_plunge
        self._command(f"G38.2 Z{_fmt(target)} F{params.probe_feed_rate:.0f}", "plunge")
        sample = self._sample()
        if sample.triggered is None:
            contact = sample.z - target > params.tolerance
        else:
            contact = sample.triggered
        if not contact:
            raise ProbeMissError(
                f"Probe did not contact surface within {params.max_plunge:.3f} "
                f"at X={sample.x:.3f} Y={sample.y:.3f}"
            )
        return sample.z

    def _command(self, command: str, tag: str) -> None:
        _LOGGER.debug("-> %s [%s]", command, tag)
        result = self._sink.send_command(command, tag)
        if not result.ok:
            raise MotionCommandError(f"Command '{command}' failed: {result.error}")

    def _settle(self) -> MachineSnapshot:
        """Poll until the machine is idle; alarms abort, timeouts only warn."""

        params = self._params
        deadline = self._clock() + params.settle_timeout
        while self._clock() < deadline:
            self._sleep(params.poll_interval)
            snapshot = self._source.machine_state()
            if snapshot.status is MachineStatus.ALARM:
                raise MachineAlarmError(f"Machine in alarm state ({snapshot.raw or 'no detail'})")
            if snapshot.status is MachineStatus.IDLE:
                return snapshot
        _LOGGER.warning("Timeout waiting for idle after %.1fs", params.settle_timeout)
        snapshot = self._source.machine_state()
        if snapshot.status is MachineStatus.ALARM:
            raise MachineAlarmError(f"Machine in alarm state ({snapshot.raw or 'no detail'})")
        return snapshot

    def _sample(self) -> ProbeSample:
        snapshot = self._settle()
        position = resolve_position(snapshot.position)
        sample = ProbeSample(position.x, position.y, position.z, snapshot.probe_triggered)
        self._last_sample = sample
        return sample

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _validate(self, spec: GridSpec) -> None:
        if spec.rows * spec.cols <= 1:
            raise ValidationError("Grid must have more than 1 point total")
        for name, value in self._params.model_dump().items():
            if not math.isfinite(float(value)):
                raise ValidationError(f"{name} must be finite")

    def _emit(self, event: str, **data: object) -> None:
        callback = self._on_event
        if callback is None:
            return
        state = self._state
        payload: Dict[str, object] = {
            "event": event,
            "phase": state.phase.value,
            "row": state.row,
            "col": state.col,
            "completed": state.completed_points,
            "total": self.mesh.grid.rows * self.mesh.grid.cols if self.mesh else 0,
        }
        payload.update(data)
        try:
            callback({"type": "probe", "data": payload})
        except Exception:  # pragma: no cover - best effort logging
            _LOGGER.exception("Probe event callback raised")


__all__ = [
    "AdaptiveProbeController",
    "CancellationToken",
    "ProbeParams",
    "ProbePhase",
    "ProbeRunResult",
    "ProbeRunState",
    "ProbeSample",
]
