"""Tests for the adaptive probing controller against a simulated machine."""

import unittest

from machine_sim import SimulatedMachine, flat, step_at_x

from surface_mesh.config import MeshSettings
from surface_mesh.errors import (
    BounceLimitError,
    MachineAlarmError,
    MotionCommandError,
    PositionUnavailableError,
    ProbeMissError,
    ValidationError,
)
from surface_mesh.probe.controller import (
    AdaptiveProbeController,
    CancellationToken,
    ProbeParams,
    ProbePhase,
)
from surface_mesh.probe.machine import MachineSnapshot, MachineStatus
from surface_mesh.probe.planner import GridPlanner


def _controller(machine: SimulatedMachine, events=None, **params) -> AdaptiveProbeController:
    return AdaptiveProbeController(
        machine,
        machine,
        ProbeParams(**params),
        on_event=events.append if events is not None else None,
        sleep=lambda _: None,
    )


def _ticking_clock(step: float):
    now = [0.0]

    def clock() -> float:
        now[0] += step
        return now[0]

    return clock


class RecordingMachine(SimulatedMachine):
    """Logs commands and status polls in one interleaved list."""

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.log = []

    def send_command(self, command, tag=""):
        self.log.append("CMD " + command)
        return super().send_command(command, tag)

    def machine_state(self):
        self.log.append("POLL")
        return super().machine_state()


class BusyMachine(SimulatedMachine):
    """Never reports Idle; alarms still surface."""

    def machine_state(self):
        snapshot = super().machine_state()
        if snapshot.status is MachineStatus.ALARM:
            return snapshot
        return snapshot.model_copy(update={"status": MachineStatus.RUNNING, "raw": "Run"})


class BlindMachine(SimulatedMachine):
    """Reports Idle without any position."""

    def machine_state(self):
        return MachineSnapshot(status=MachineStatus.IDLE, raw="Idle")


class ControllerSequenceTests(unittest.TestCase):
    """Validate the emitted command sequence."""

    def test_bounce_retracts_above_contact_and_retries(self) -> None:
        machine = SimulatedMachine(step_at_x(12.0, 0.0, 8.0))
        result = _controller(machine).run(GridPlanner.from_size(20.0, 0.0, 1, 2))

        self.assertEqual(
            machine.commands,
            [
                "G90",
                "G38.2 Z-15.000 F100",
                "G1 Z5.000 F2000",
                "G38.3 X20.000 F2000",
                "G1 Z10.000 F2000",
                "G38.3 X20.000 F2000",
                "G38.2 Z-10.000 F100",
                "G1 Z13.000 F2000",
                "G38.3 X0.000 F2000",
            ],
        )
        self.assertFalse(result.stopped)
        self.assertEqual(result.phase, ProbePhase.COMPLETED)
        self.assertAlmostEqual(result.mesh.points[0][0].z, 0.0)
        self.assertAlmostEqual(result.mesh.points[0][1].z, 8.0)
        self.assertTrue(result.mesh.frozen)

    def test_descending_surface_uses_small_clearance(self) -> None:
        machine = SimulatedMachine(step_at_x(10.0, 0.0, -3.0))
        _controller(machine).run(GridPlanner.from_size(20.0, 0.0, 1, 2))
        self.assertIn("G1 Z-2.000 F2000", machine.commands)
        self.assertEqual(machine.commands[-2:], ["G1 Z5.000 F2000", "G38.3 X0.000 F2000"])

    def test_never_rapids(self) -> None:
        machine = SimulatedMachine(flat(0.0))
        _controller(machine).run(GridPlanner.from_size(10.0, 10.0, 3, 3))
        self.assertFalse([cmd for cmd in machine.commands if cmd.startswith("G0")])
        self.assertTrue(all(cmd.split()[0] in {"G90", "G1", "G38.2", "G38.3"} for cmd in machine.commands))

    def test_row_transition_returns_to_row_start(self) -> None:
        machine = SimulatedMachine(flat(0.0))
        _controller(machine).run(GridPlanner.from_size(10.0, 10.0, 2, 2))
        first_y = machine.commands.index("G38.3 Y10.000 F2000")
        self.assertEqual(machine.commands[first_y - 1], "G38.3 X0.000 F2000")
        self.assertEqual(machine.commands[first_y - 2], "G1 Z5.000 F2000")

    def test_every_command_waits_for_the_machine(self) -> None:
        machine = RecordingMachine(step_at_x(12.0, 0.0, 8.0))
        _controller(machine).run(GridPlanner.from_size(20.0, 0.0, 1, 2))
        for index, entry in enumerate(machine.log):
            if entry.startswith("CMD"):
                self.assertEqual(machine.log[index + 1], "POLL", f"no poll after {entry}")
        retracts = [entry for entry in machine.log if entry.startswith("CMD G1")]
        self.assertEqual(len(retracts), 3)

    def test_final_retract_skipped_when_already_clear(self) -> None:
        machine = SimulatedMachine(flat(0.0))
        _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertEqual(machine.commands[-2:], ["G1 Z5.000 F2000", "G38.3 X0.000 F2000"])
        for previous, current in zip(machine.commands, machine.commands[1:]):
            if current.startswith("G1"):
                self.assertNotEqual(previous, current)


class ControllerMeshTests(unittest.TestCase):
    """Validate the captured heights."""

    def test_sloped_surface_recorded_per_point(self) -> None:
        machine = SimulatedMachine(lambda x, y: 0.1 * x - 0.05 * y, start=(0.0, 0.0, 5.0))
        result = _controller(machine).run(GridPlanner.from_size(20.0, 20.0, 3, 3))
        for row in result.mesh.points:
            for point in row:
                self.assertAlmostEqual(point.z, 0.1 * point.x - 0.05 * point.y, places=3)
        self.assertEqual(result.completed_points, 9)
        self.assertEqual(result.total_points, 9)

    def test_machine_offset_position_without_pins(self) -> None:
        """MPos-WCO reports and an unknown pin still yield correct heights."""

        machine = SimulatedMachine(
            step_at_x(5.0, 1.0, 2.0),
            start=(0.0, 0.0, 6.0),
            wco=(-100.0, -50.0, -20.0),
            report_pins=False,
        )
        result = _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertAlmostEqual(result.mesh.points[0][0].z, 1.0)
        self.assertAlmostEqual(result.mesh.points[0][1].z, 2.0)

    def test_grid_anchored_at_start_position(self) -> None:
        machine = SimulatedMachine(flat(-1.0), start=(30.0, 40.0, 2.0))
        result = _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertEqual((result.mesh.grid.start_x, result.mesh.grid.start_y), (30.0, 40.0))
        self.assertAlmostEqual(result.mesh.points[0][1].x, 40.0)

    def test_events_report_progress(self) -> None:
        events = []
        machine = SimulatedMachine(flat(0.0))
        _controller(machine, events).run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        kinds = [event["data"]["event"] for event in events]
        self.assertEqual(kinds.count("point"), 2)
        self.assertEqual(kinds[-1], "completed")
        self.assertTrue(all(event["type"] == "probe" for event in events))


class ControllerFailureTests(unittest.TestCase):
    """Validate error and cancellation handling."""

    def test_single_point_grid_rejected_before_motion(self) -> None:
        machine = SimulatedMachine(flat(0.0))
        controller = _controller(machine)
        with self.assertRaises(ValidationError):
            controller.run_from_settings(MeshSettings(rows=1, cols=1))
        self.assertEqual(machine.commands, [])

    def test_alarm_aborts_run(self) -> None:
        machine = SimulatedMachine(flat(0.0), alarm_after="G38.2")
        controller = _controller(machine)
        with self.assertRaises(MachineAlarmError):
            controller.run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertEqual(controller.phase, ProbePhase.ABORTED)

    def test_plunge_without_contact_is_a_miss(self) -> None:
        machine = SimulatedMachine(flat(-100.0))
        with self.assertRaises(ProbeMissError):
            _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))

    def test_miss_detected_without_pin_report(self) -> None:
        machine = SimulatedMachine(flat(-100.0), report_pins=False)
        with self.assertRaises(ProbeMissError):
            _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))

    def test_bounce_limit(self) -> None:
        machine = SimulatedMachine(step_at_x(5.0, 0.0, 1000.0))
        with self.assertRaises(BounceLimitError):
            _controller(machine, max_bounces=3).run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        lateral = [cmd for cmd in machine.commands if cmd.startswith("G38.3")]
        self.assertEqual(len(lateral), 4)

    def test_rejected_command_aborts(self) -> None:
        class Rejecting(SimulatedMachine):
            def send_command(self, command, tag=""):
                result = super().send_command(command, tag)
                if command.startswith("G38.2"):
                    return result.failure("error:5")
                return result

        machine = Rejecting(flat(0.0))
        with self.assertRaises(MotionCommandError):
            _controller(machine).run(GridPlanner.from_size(10.0, 0.0, 1, 2))

    def test_cancel_between_points_returns_partial_mesh(self) -> None:
        token = CancellationToken()

        def _on_event(event):
            if event["data"]["event"] == "point":
                token.cancel()

        machine = SimulatedMachine(flat(0.5))
        controller = AdaptiveProbeController(
            machine, machine, on_event=_on_event, sleep=lambda _: None
        )
        result = controller.run(GridPlanner.from_size(10.0, 10.0, 2, 2), token)
        self.assertTrue(result.stopped)
        self.assertEqual(result.phase, ProbePhase.ABORTED)
        self.assertEqual(result.completed_points, 1)
        self.assertAlmostEqual(result.mesh.points[0][0].z, 0.5)
        self.assertIsNone(result.mesh.points[1][1].z)
        self.assertFalse(result.mesh.frozen)

    def test_missing_position_is_fatal(self) -> None:
        machine = BlindMachine(flat(0.0))
        controller = _controller(machine)
        with self.assertRaises(PositionUnavailableError):
            controller.run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertEqual(machine.commands, ["G90"])
        self.assertEqual(controller.phase, ProbePhase.ABORTED)

    def test_poll_timeout_only_warns(self) -> None:
        machine = BusyMachine(flat(0.0))
        controller = AdaptiveProbeController(
            machine,
            machine,
            ProbeParams(settle_timeout=2.0),
            sleep=lambda _: None,
            clock=_ticking_clock(1.0),
        )
        with self.assertLogs("surface_mesh.probe.controller", level="WARNING") as logs:
            result = controller.run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertFalse(result.stopped)
        self.assertEqual(result.completed_points, 2)
        self.assertAlmostEqual(result.mesh.points[0][1].z, 0.0)
        self.assertTrue(any("Timeout waiting for idle" in line for line in logs.output))

    def test_alarm_on_read_after_timeout_is_fatal(self) -> None:
        sleeps = []
        machine = BusyMachine(flat(0.0), alarm_after="G38.2")
        controller = AdaptiveProbeController(
            machine,
            machine,
            ProbeParams(settle_timeout=10.0),
            sleep=sleeps.append,
            clock=_ticking_clock(100.0),
        )
        with self.assertLogs("surface_mesh.probe.controller", level="WARNING"):
            with self.assertRaises(MachineAlarmError):
                controller.run(GridPlanner.from_size(10.0, 0.0, 1, 2))
        self.assertEqual(sleeps, [])
        self.assertEqual(machine.commands[-1], "G38.2 Z-15.000 F100")
        self.assertEqual(controller.phase, ProbePhase.ABORTED)


if __name__ == "__main__":
    unittest.main()
