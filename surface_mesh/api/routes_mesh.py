"""Mesh routes: settings, program upload, probing, persistence and compensation."""

from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, File, HTTPException, Request, UploadFile, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from surface_mesh._logging import get_logger
from surface_mesh.core.orchestrator import CompensationRequest, Orchestrator, OrchestratorError
from surface_mesh.errors import MeshError, PersistenceError, ValidationError
from surface_mesh.probe.planner import SurfaceMesh
from surface_mesh.sender.service import SenderService


_LOGGER = get_logger(__name__)


router = APIRouter(prefix="/mesh", tags=["mesh"])


class ApplyRequest(BaseModel):
    """Optional overrides for one compensation request."""

    reference_z: Optional[float] = None
    program_name: Optional[str] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, allow_inf_nan=False)


def get_orchestrator(request: Request) -> Orchestrator:
    return request.app.state.orchestrator


def get_sender(request: Request) -> SenderService:
    return request.app.state.sender_service


def _handle_mesh_exception(exc: Exception) -> None:
    """Convert orchestration errors into HTTP exceptions."""

    if isinstance(exc, ValidationError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    if isinstance(exc, OrchestratorError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, PersistenceError):
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    if isinstance(exc, MeshError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    raise exc


def _mesh_payload(mesh: SurfaceMesh) -> Dict[str, Any]:
    stats = mesh.stats()
    return {
        "gridParams": mesh.grid.model_dump(by_alias=True),
        "mesh": [[point.model_dump() for point in row] for row in mesh.points],
        "complete": mesh.complete,
        "stats": None if stats is None else stats.model_dump(),
        "table": mesh.format_table(),
    }


@router.get("/settings")
async def get_settings(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.settings().model_dump(by_alias=True)


@router.put("/settings")
async def update_settings(
    changes: Dict[str, Any] = Body(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Apply a partial update; keys may be camelCase or snake_case."""

    try:
        settings = await asyncio.to_thread(orchestrator.update_settings, **changes)
    except Exception as exc:
        _handle_mesh_exception(exc)
    return settings.model_dump(by_alias=True)


@router.post("/program")
async def upload_program(
    file: UploadFile = File(...),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Store an uploaded program and return its bounding box."""

    raw = await file.read()
    await file.close()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Program must be UTF-8 text") from exc

    try:
        name, bounds = await asyncio.to_thread(
            orchestrator.load_program, file.filename or "program.nc", text
        )
    except Exception as exc:
        _handle_mesh_exception(exc)
    _LOGGER.info("Uploaded program %s (%d bytes)", name, len(raw))
    return {"program": name, "bounds": bounds.model_dump()}


@router.get("/bounds")
async def program_bounds(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    try:
        bounds = await asyncio.to_thread(orchestrator.program_bounds)
    except Exception as exc:
        _handle_mesh_exception(exc)
    if bounds is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No program loaded")
    return bounds.model_dump()


@router.post("/probe/start")
async def start_probe(
    orchestrator: Orchestrator = Depends(get_orchestrator),
    sender: SenderService = Depends(get_sender),
) -> dict:
    """Start probing from the current tool position."""

    if not sender.connected:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Serial port not connected")
    try:
        total = await asyncio.to_thread(orchestrator.start_probe, sender, sender)
    except Exception as exc:
        _handle_mesh_exception(exc)
    return {"status": "started", "total": total}


@router.post("/probe/stop")
async def stop_probe(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    stopping = orchestrator.stop_probe()
    return {"status": "stopping" if stopping else "idle"}


@router.get("/probe/status")
async def probe_status(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    return orchestrator.probe_status()


@router.get("")
async def get_mesh(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    """Return the current mesh with statistics and a text table."""

    mesh = orchestrator.current_mesh()
    if mesh is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No mesh data available")
    return _mesh_payload(mesh)


@router.get("/height")
async def mesh_height(x: float, y: float, orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    if not (math.isfinite(x) and math.isfinite(y)):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="x and y must be finite numbers"
        )
    mesh = orchestrator.current_mesh()
    if mesh is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No mesh data available")
    return {"x": x, "y": y, "z": mesh.height_at(x, y)}


@router.post("/save")
async def save_mesh(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    try:
        path = await asyncio.to_thread(orchestrator.save_mesh)
    except Exception as exc:
        _handle_mesh_exception(exc)
    return {"status": "saved", "path": str(path)}


@router.post("/load")
async def load_mesh(orchestrator: Orchestrator = Depends(get_orchestrator)) -> dict:
    mesh = await asyncio.to_thread(orchestrator.load_saved_mesh)
    if mesh is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No saved mesh found")
    return _mesh_payload(mesh)


@router.delete("")
async def clear_mesh(
    remove_file: bool = False,
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    try:
        cleared = await asyncio.to_thread(orchestrator.clear_mesh, remove_file=remove_file)
    except Exception as exc:
        _handle_mesh_exception(exc)
    return {"status": "cleared" if cleared else "empty"}


@router.post("/apply")
async def apply_compensation(
    payload: Optional[ApplyRequest] = Body(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict:
    """Queue a compensation request and wait for its result."""

    payload = payload or ApplyRequest()
    request = CompensationRequest(
        reference_z=payload.reference_z, program_name=payload.program_name
    )
    try:
        future = orchestrator.submit_compensation(request)
    except Exception as exc:
        _handle_mesh_exception(exc)
    result = await asyncio.wrap_future(future)
    if not result.success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return result.model_dump()


__all__ = ["router"]
