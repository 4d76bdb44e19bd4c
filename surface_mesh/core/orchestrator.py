"""Probe-run lifecycle and compensation request handling."""

from __future__ import annotations

import queue
import threading
import uuid
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from surface_mesh._logging import get_logger
from surface_mesh.config import MeshSettings, save_settings
from surface_mesh.core.programs import ProgramStore
from surface_mesh.core.state import ApplyResult, AppState, AppStateStore
from surface_mesh.errors import PersistenceError, RewriteIOError, ValidationError
from surface_mesh.gcode.analyzer import BoundingBox, bounding_box
from surface_mesh.gcode.rewriter import ZCompensationRewriter, compensated_filename
from surface_mesh.probe.controller import (
    AdaptiveProbeController,
    CancellationToken,
    ProbeRunResult,
)
from surface_mesh.probe.machine import MachineStateSource, MotionSink
from surface_mesh.probe.planner import GridPlanner, GridSpec, SurfaceMesh
from surface_mesh.probe.store import MeshStore


_LOGGER = get_logger(__name__)

_EVENT_CALLBACK = Callable[[Dict[str, object]], None]


class OrchestratorError(RuntimeError):
    """Raised when orchestrated workflows cannot be executed."""


class CompensationRequest(BaseModel):
    """One apply-compensation message; consumed exactly once."""

    request_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    reference_z: Optional[float] = None
    program_name: Optional[str] = None

    model_config = ConfigDict(allow_inf_nan=False)


class _ProbeRun:
    def __init__(self, controller: AdaptiveProbeController, total: int) -> None:
        self.controller = controller
        self.token = CancellationToken()
        self.total = total
        self.thread: Optional[threading.Thread] = None
        self.result: Optional[ProbeRunResult] = None
        self.error: Optional[BaseException] = None


class Orchestrator:
    """Coordinate probe runs, mesh persistence and program compensation.

    A single worker thread drains the compensation queue; each request is
    answered through the :class:`~concurrent.futures.Future` returned by
    :meth:`submit_compensation`. At most one probe run is active at a time.
    """

    def __init__(
        self,
        state: AppStateStore,
        programs: ProgramStore,
        mesh_store: MeshStore,
        *,
        settings_path: Optional[Path] = None,
        controller_factory: Callable[..., AdaptiveProbeController] = AdaptiveProbeController,
    ) -> None:
        self._state = state
        self._programs = programs
        self._mesh_store = mesh_store
        self._settings_path = Path(settings_path) if settings_path is not None else None
        self._controller_factory = controller_factory
        self._event_sink: Optional[_EVENT_CALLBACK] = None
        self._run_lock = threading.Lock()
        self._run: Optional[_ProbeRun] = None
        self._requests: "queue.Queue[Tuple[CompensationRequest, Future]]" = queue.Queue()
        self._stop_event = threading.Event()
        self._worker = threading.Thread(
            target=self._worker_loop, name="compensation-worker", daemon=True
        )
        self._worker.start()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------
    def set_event_sink(self, callback: Optional[_EVENT_CALLBACK]) -> None:
        self._event_sink = callback

    def _emit(self, payload: Dict[str, object]) -> None:
        callback = self._event_sink
        if callback is None:
            return
        try:
            callback(payload)
        except Exception:  # pragma: no cover - listener failures are logged only
            _LOGGER.exception("Orchestrator event sink raised an exception")

    # ------------------------------------------------------------------
    # Settings and programs
    # ------------------------------------------------------------------
    def settings(self) -> MeshSettings:
        return self._state.read().settings

    def update_settings(self, **changes: object) -> MeshSettings:
        """Validate and store new settings, writing them to disk when configured."""

        def _apply(state: AppState) -> AppState:
            return state.model_copy(update={"settings": state.settings.merged(**changes)})

        settings = self._state.mutate(_apply).settings
        if self._settings_path is not None:
            save_settings(settings, self._settings_path)
        _LOGGER.info("Settings updated: %s", sorted(changes))
        return settings

    def load_program(self, name: str, text: str) -> Tuple[str, BoundingBox]:
        """Store an uploaded program and make it the current one.

        Returns the name the program was stored under and its bounding box.
        """

        stored = self._programs.write(name, text)
        self._state.update(program_name=stored)
        bounds = bounding_box(text)
        _LOGGER.info(
            "Loaded program %s: X %.3f..%.3f Y %.3f..%.3f",
            stored,
            bounds.min.x,
            bounds.max.x,
            bounds.min.y,
            bounds.max.y,
        )
        return stored, bounds

    def program_bounds(self) -> Optional[BoundingBox]:
        name = self._state.read().program_name
        if not name:
            return None
        return bounding_box(self._programs.read(name))

    # ------------------------------------------------------------------
    # Probing
    # ------------------------------------------------------------------
    def start_probe(self, sink: MotionSink, source: MachineStateSource) -> int:
        """Plan the grid and start a probe run in the background.

        Returns the number of points to probe. Invalid settings raise
        :class:`~surface_mesh.errors.ValidationError` before any motion.
        """

        with self._run_lock:
            if self._run is not None and self._run.thread is not None and self._run.thread.is_alive():
                raise OrchestratorError("A probe run is already active")

            state = self._state.read()
            bounds = self.program_bounds() if state.settings.grid_mode == "auto" else None
            spec = GridPlanner.plan(state.settings, bounds)
            controller = self._controller_factory(
                sink, source, state.settings.probe_params(), on_event=self._emit
            )
            run = _ProbeRun(controller, spec.total_points)
            run.thread = threading.Thread(
                target=self._probe_worker, args=(run, spec), name="probe-run", daemon=True
            )
            self._run = run
            self._state.update(probing=True, last_probe_error=None)
            run.thread.start()

        _LOGGER.info("Probe run started for %d points", spec.total_points)
        return spec.total_points

    def stop_probe(self) -> bool:
        """Request cancellation of the active run; ``False`` if none is running."""

        run = self._run
        if run is None or run.thread is None or not run.thread.is_alive():
            return False
        run.token.cancel()
        _LOGGER.info("Probe run stop requested")
        return True

    def wait_probe(self, timeout: Optional[float] = None) -> Optional[ProbeRunResult]:
        """Join the current run thread and return its result, if any."""

        run = self._run
        if run is None or run.thread is None:
            return None
        run.thread.join(timeout)
        return run.result

    def probe_status(self) -> Dict[str, object]:
        run = self._run
        state = self._state.read()
        status: Dict[str, object] = {
            "probing": state.probing,
            "error": state.last_probe_error,
            "hasMesh": state.has_mesh,
        }
        if run is not None:
            status.update(
                phase=run.controller.phase.value,
                completed=run.controller.completed_points,
                total=run.total,
            )
        return status

    def _probe_worker(self, run: _ProbeRun, spec: GridSpec) -> None:
        try:
            result = run.controller.run(spec, run.token)
        except Exception as exc:
            run.error = exc
            _LOGGER.error("Probe run failed: %s", exc)
            self._state.update(probing=False, last_probe_error=str(exc))
            return

        run.result = result
        if result.stopped:
            self._state.update(probing=False)
            return

        self._state.update(probing=False, mesh=result.mesh)
        try:
            self._mesh_store.save(result.mesh)
        except PersistenceError as exc:
            _LOGGER.error("Mesh probed but not persisted: %s", exc)
            self._state.update(last_probe_error=str(exc))
            self._emit({"type": "mesh", "data": {"event": "save_failed", "message": str(exc)}})

    # ------------------------------------------------------------------
    # Mesh lifecycle
    # ------------------------------------------------------------------
    def current_mesh(self) -> Optional[SurfaceMesh]:
        return self._state.read().mesh

    def save_mesh(self) -> Path:
        mesh = self.current_mesh()
        if mesh is None:
            raise OrchestratorError("No mesh data to save")
        return self._mesh_store.save(mesh)

    def load_saved_mesh(self) -> Optional[SurfaceMesh]:
        """Replace the in-memory mesh with the stored one, if any."""

        mesh = self._mesh_store.load()
        if mesh is not None:
            self._state.update(mesh=mesh)
        return mesh

    def clear_mesh(self, *, remove_file: bool = False) -> bool:
        had_mesh = self.current_mesh() is not None
        self._state.update(mesh=None)
        removed = self._mesh_store.clear() if remove_file else False
        _LOGGER.info("Mesh cleared (file removed: %s)", removed)
        return had_mesh or removed

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------
    def submit_compensation(self, request: Optional[CompensationRequest] = None) -> "Future[ApplyResult]":
        """Queue ``request``; the returned future resolves to its :class:`ApplyResult`."""

        if self._stop_event.is_set():
            raise OrchestratorError("Orchestrator is closed")
        request = request or CompensationRequest()
        future: "Future[ApplyResult]" = Future()
        self._requests.put((request, future))
        _LOGGER.debug("Compensation request %s queued", request.request_id)
        return future

    def _worker_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                request, future = self._requests.get(timeout=0.1)
            except queue.Empty:
                continue
            try:
                if future.set_running_or_notify_cancel():
                    future.set_result(self._apply(request))
            except Exception as exc:
                _LOGGER.exception("Compensation request %s crashed", request.request_id)
                if not future.done():
                    future.set_exception(exc)
            finally:
                self._requests.task_done()

    def _apply(self, request: CompensationRequest) -> ApplyResult:
        state = self._state.read()
        result = self._compensate(request, state)
        self._state.update(last_apply=result)
        self._emit({"type": "compensation", "data": result.model_dump()})
        return result

    def _compensate(self, request: CompensationRequest, state: AppState) -> ApplyResult:
        if state.mesh is None:
            _LOGGER.warning("Compensation requested without mesh data")
            return ApplyResult(
                request_id=request.request_id, success=False, error="No mesh data available"
            )
        name = request.program_name or state.program_name
        if not name:
            return ApplyResult(
                request_id=request.request_id, success=False, error="No program loaded"
            )
        reference_z = (
            request.reference_z if request.reference_z is not None else state.settings.reference_z
        )

        rewriter = ZCompensationRewriter(state.mesh, reference_z)
        try:
            text = self._programs.read(name)
            output = self._programs.write(compensated_filename(name), rewriter.rewrite(text))
        except (RewriteIOError, ValidationError) as exc:
            return ApplyResult(request_id=request.request_id, success=False, error=str(exc))

        _LOGGER.info("Compensated %s -> %s", name, output)
        return ApplyResult(request_id=request.request_id, success=True, filename=output)

    def close(self) -> None:
        """Stop the worker thread and cancel any active probe run."""

        self.stop_probe()
        self._stop_event.set()
        self._worker.join(timeout=1.0)
        while True:
            try:
                _, future = self._requests.get_nowait()
            except queue.Empty:
                break
            future.cancel()


__all__ = ["CompensationRequest", "Orchestrator", "OrchestratorError"]
