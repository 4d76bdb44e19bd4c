"""Thread-safe GRBL serial link used as motion sink and machine state source."""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional

import serial
from serial import SerialException
from serial.tools import list_ports

from surface_mesh._logging import get_logger
from surface_mesh.probe.machine import (
    CommandResult,
    MachineSnapshot,
    MachineStatus,
    Position,
    build_snapshot,
    parse_position,
    parse_prb,
    parse_status_fields,
)


_LOGGER = get_logger(__name__)


_EVENT_CALLBACK = Callable[[Dict[str, object]], None]


class SenderError(Exception):
    """Base exception for sender service errors."""


class SenderStateError(SenderError):
    """Raised when an operation is invalid for the current state."""


class SenderJobError(SenderError):
    """Raised when a line cannot be delivered to the controller."""


class SenderService:
    """Synchronous line sender with a background RX thread.

    ``send_command`` blocks until GRBL acknowledges the line. GRBL holds
    the acknowledgement of ``G38.x`` probe cycles until the cycle ends.
    """

    _REALTIME_COMMANDS = {
        "status": 0x3F,
        "hold": 0x21,
        "start": 0x7E,
        "reset": 0x18,
    }

    def __init__(self, ack_timeout: float = 60.0, status_timeout: float = 0.5) -> None:
        """Initialise the sender; the serial port is opened with :meth:`open`."""

        self._ack_timeout = ack_timeout
        self._status_timeout = status_timeout

        self._serial_lock = threading.RLock()
        self._state_lock = threading.RLock()
        self._ack_condition = threading.Condition()
        self._status_condition = threading.Condition(self._state_lock)
        self._rx_lines: Deque[str] = deque(maxlen=200)
        self._event_sink: Optional[_EVENT_CALLBACK] = None

        self._serial: Optional[serial.Serial] = None
        self._rx_thread: Optional[threading.Thread] = None
        self._rx_stop = threading.Event()

        self._awaiting_ack = False
        self._ack_line: Optional[str] = None

        self._reset_machine_cache()
        self._last_rx_line: str = ""
        self._port: Optional[str] = None
        self._baud: Optional[int] = None
        self._serial_error = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def list_ports(self) -> List[str]:
        """Return a list of available serial ports."""

        return [port.device for port in list_ports.comports()]

    def open(self, port: str, baud: int = 115200) -> tuple[bool, str]:
        """Open a serial connection to the GRBL controller."""

        with self._serial_lock:
            if self._serial and self._serial.is_open:
                return False, "Serial port already open"

            self._serial_error = False
            try:
                self._serial = serial.Serial(
                    port=port,
                    baudrate=baud,
                    timeout=0.1,
                    write_timeout=0.1,
                )
            except SerialException as exc:
                _LOGGER.error("Failed to open serial port %s: %s", port, exc)
                return False, str(exc)

            self._port = port
            self._baud = baud
            try:
                self._serial.reset_input_buffer()
                self._serial.reset_output_buffer()
            except SerialException as exc:
                _LOGGER.warning("Failed to reset buffers: %s", exc)

        self._rx_stop.clear()
        self._rx_thread = threading.Thread(target=self._rx_loop, name="grbl-rx", daemon=True)
        self._rx_thread.start()
        _LOGGER.info("Connected to %s at %d baud", port, baud)
        return True, "Connected"

    def close(self) -> None:
        """Close the serial connection and stop the RX thread."""

        self._rx_stop.set()
        rx_thread = self._rx_thread
        if rx_thread and rx_thread.is_alive():
            rx_thread.join(timeout=1.0)
        self._rx_thread = None

        with self._serial_lock:
            if self._serial:
                try:
                    self._serial.close()
                except SerialException as exc:
                    _LOGGER.warning("Error closing serial port: %s", exc)
                self._serial = None

        with self._ack_condition:
            self._awaiting_ack = False
            self._ack_line = None
            self._ack_condition.notify_all()

        with self._state_lock:
            self._reset_machine_cache()
            self._port = None
            self._baud = None
            self._serial_error = False

    @property
    def connected(self) -> bool:
        with self._serial_lock:
            return bool(self._serial and self._serial.is_open) and not self._serial_error

    def status(self) -> dict:
        """Return the latest cached machine and connection status."""

        connected = self.connected
        with self._state_lock:
            probe = self._last_probe
            return {
                "state": self._machine_state or ("Connected" if connected else "Disconnected"),
                "last": self._last_rx_line,
                "mpos": self._dump(self._mpos),
                "wpos": self._dump(self._wpos),
                "wco": self._dump(self._wco),
                "alarm": self._alarm,
                "probe": None if probe is None else {"position": self._dump(probe[0]), "ok": probe[1]},
                "port": self._port or "",
            }

    def send_command(self, command: str, tag: str = "") -> CommandResult:
        """Send one line and wait for GRBL's ``ok`` / ``error:N``."""

        line = command.strip()
        if not line:
            return CommandResult.failure("Command must not be empty")
        try:
            self._ensure_ready()
            ack = self._transmit_and_wait(line, timeout=self._ack_timeout)
        except SenderError as exc:
            _LOGGER.error("Command '%s' [%s] failed: %s", line, tag, exc)
            self._emit_command_event(line, tag, False, str(exc))
            return CommandResult.failure(str(exc))

        if ack is None:
            message = f"No acknowledgement within {self._ack_timeout:.1f}s"
            _LOGGER.error("Command '%s' [%s]: %s", line, tag, message)
            self._emit_command_event(line, tag, False, message)
            return CommandResult.failure(message)
        if ack.startswith("error"):
            _LOGGER.error("Controller rejected '%s' [%s]: %s", line, tag, ack)
            self._emit_command_event(line, tag, False, ack)
            return CommandResult.failure(ack)

        self._emit_command_event(line, tag, True, None)
        return CommandResult.success()

    def machine_state(self) -> MachineSnapshot:
        """Request a fresh status report and return it as a snapshot."""

        if not self.connected:
            return MachineSnapshot(status=MachineStatus.OTHER, raw="disconnected")

        with self._state_lock:
            seen = self._status_seq
        try:
            self._send_realtime("status")
        except SenderError as exc:
            _LOGGER.warning("Status query failed: %s", exc)

        deadline = time.monotonic() + self._status_timeout
        with self._status_condition:
            while self._status_seq == seen:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    _LOGGER.debug("No fresh status report, using cached values")
                    break
                self._status_condition.wait(timeout=remaining)
            state = self._machine_state
            if self._alarm and state is None:
                state = "Alarm"
            return build_snapshot(
                state,
                wpos=self._wpos,
                mpos=self._mpos,
                wco=self._wco,
                pins=self._pins,
                raw=self._last_status_line or "",
            )

    def hold(self) -> None:
        """Pause the machine using the GRBL feed hold command."""

        self._send_realtime("hold")

    def start(self) -> None:
        """Resume the machine after a hold."""

        self._send_realtime("start")

    def reset(self) -> None:
        """Soft-reset the controller."""

        self._send_realtime("reset")

    def set_event_sink(self, callback: Optional[_EVENT_CALLBACK]) -> None:
        """Register a callback for RX, state and command events."""

        self._event_sink = callback

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _reset_machine_cache(self) -> None:
        self._machine_state: Optional[str] = None
        self._last_status_line: Optional[str] = None
        self._mpos: Optional[Position] = None
        self._wpos: Optional[Position] = None
        self._wco: Optional[Position] = None
        self._pins: Optional[str] = None
        self._alarm: Optional[str] = None
        self._status_seq = 0
        self._last_probe: Optional[tuple[Position, bool]] = None

    def _ensure_ready(self) -> None:
        """Ensure that the serial connection is ready for new lines."""

        if self._serial_error:
            raise SenderStateError("Serial port is in error state")
        with self._serial_lock:
            if not self._serial or not self._serial.is_open:
                raise SenderStateError("Serial port is not open")

    def _transmit_and_wait(self, line: str, timeout: float) -> Optional[str]:
        """Write a line to serial and wait for an ACK."""

        with self._ack_condition:
            self._awaiting_ack = True
            self._ack_line = None

        data = (line + "\n").encode("ascii", errors="ignore")
        try:
            with self._serial_lock:
                if not self._serial:
                    raise SenderStateError("Serial port not available")
                self._serial.write(data)
                self._serial.flush()
        except (SerialException, SenderStateError) as exc:
            _LOGGER.error("Failed to write line '%s': %s", line, exc)
            with self._ack_condition:
                self._awaiting_ack = False
                self._ack_condition.notify_all()
            if isinstance(exc, SerialException):
                self._handle_serial_failure(exc)
            raise SenderJobError(str(exc)) from exc

        deadline = time.monotonic() + timeout
        with self._ack_condition:
            while self._awaiting_ack:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._ack_condition.wait(timeout=remaining)
            ack = self._ack_line
            self._awaiting_ack = False
            self._ack_line = None
        return ack

    def _send_realtime(self, command: str) -> None:
        """Send a real-time command byte to the controller."""

        if command not in self._REALTIME_COMMANDS:
            raise ValueError(f"Unsupported real-time command: {command}")
        data = bytes([self._REALTIME_COMMANDS[command]])
        with self._serial_lock:
            if not self._serial or not self._serial.is_open:
                raise SenderStateError("Serial port is not open")
            try:
                self._serial.write(data)
                self._serial.flush()
            except SerialException as exc:
                _LOGGER.error("Real-time command %s failed: %s", command, exc)
                self._handle_serial_failure(exc)
                raise SenderError(str(exc)) from exc

    def _rx_loop(self) -> None:
        """Continuously read from the serial port and dispatch responses."""

        while not self._rx_stop.is_set():
            with self._serial_lock:
                serial_ref = self._serial
            if not serial_ref or not serial_ref.is_open:
                time.sleep(0.05)
                continue
            try:
                raw = serial_ref.readline()
            except SerialException as exc:
                _LOGGER.error("Serial read failed: %s", exc)
                self._handle_serial_failure(exc)
                break
            if not raw:
                continue
            line = raw.decode("utf-8", errors="ignore").strip()
            if line:
                self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        """Route a received line to the status, alarm, probe or ACK handler."""

        self._rx_lines.append(line)
        self._last_rx_line = line
        self._emit_event({"type": "rx", "data": line})
        if line.startswith("<") and line.endswith(">"):
            self._handle_status_line(line)
        elif line == "ok" or line.startswith("error"):
            self._register_ack(line)
        elif line.upper().startswith("ALARM"):
            _LOGGER.error("Controller alarm: %s", line)
            with self._status_condition:
                self._alarm = line
                self._machine_state = "Alarm"
                self._status_seq += 1
                self._status_condition.notify_all()
        elif line.startswith("[PRB:"):
            probe = parse_prb(line)
            if probe is not None:
                with self._state_lock:
                    self._last_probe = probe

    def _register_ack(self, line: str) -> None:
        """Register an acknowledgement and notify waiting threads."""

        with self._ack_condition:
            self._ack_line = line
            self._awaiting_ack = False
            self._ack_condition.notify_all()

    def _handle_status_line(self, line: str) -> None:
        """Parse a ``<State|...>`` report and update cached values."""

        parsed = parse_status_fields(line)
        if parsed is None:
            return
        state, fields = parsed
        wpos = parse_position(fields.get("WPos"))
        mpos = parse_position(fields.get("MPos"))
        wco = parse_position(fields.get("WCO"))

        with self._status_condition:
            self._machine_state = state
            self._last_status_line = line
            # GRBL reports either WPos or MPos, and WCO only periodically.
            self._wpos = wpos
            self._mpos = mpos
            if wco is not None:
                self._wco = wco
            self._pins = fields.get("Pn", "")
            if not state.lower().startswith("alarm"):
                self._alarm = None
            self._status_seq += 1
            self._status_condition.notify_all()

        self._emit_event(
            {
                "type": "state",
                "data": {
                    "machine": state,
                    "mpos": self._dump(mpos),
                    "wpos": self._dump(wpos),
                },
            }
        )

    def _emit_event(self, payload: Dict[str, object]) -> None:
        """Emit an event through the registered callback."""

        callback = self._event_sink
        if not callback:
            return
        try:
            callback(payload)
        except Exception as exc:  # pragma: no cover - best effort logging
            _LOGGER.error("Event sink raised an exception: %s", exc)

    def _emit_command_event(self, line: str, tag: str, ok: bool, error: Optional[str]) -> None:
        self._emit_event(
            {"type": "command", "data": {"command": line, "tag": tag, "ok": ok, "error": error}}
        )

    def _handle_serial_failure(self, exc: Exception) -> None:
        """Handle serial failure scenarios by switching to error state."""

        _LOGGER.error("Serial failure detected: %s", exc)
        with self._serial_lock:
            if self._serial and self._serial.is_open:
                try:
                    self._serial.close()
                except SerialException:
                    _LOGGER.debug("Ignoring close failure after serial error")
                self._serial = None
        with self._ack_condition:
            self._awaiting_ack = False
            self._ack_condition.notify_all()
        with self._state_lock:
            self._serial_error = True

    @staticmethod
    def _dump(position: Optional[Position]) -> Optional[List[float]]:
        return None if position is None else [position.x, position.y, position.z]


__all__ = ["SenderService", "SenderError", "SenderStateError", "SenderJobError"]
