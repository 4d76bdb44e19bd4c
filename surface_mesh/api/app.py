"""FastAPI application factory wiring routes and services."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from surface_mesh._logging import get_logger
from surface_mesh.api.routes_mesh import router as mesh_router
from surface_mesh.api.routes_sender import SenderEventManager, router as sender_router
from surface_mesh.config import MeshSettings, load_settings
from surface_mesh.core.orchestrator import Orchestrator
from surface_mesh.core.programs import ProgramStore
from surface_mesh.core.state import AppState, AppStateStore
from surface_mesh.errors import ValidationError
from surface_mesh.probe.store import MeshStore, default_data_dir
from surface_mesh.sender.service import SenderService


_LOGGER = get_logger(__name__)


def _initial_settings(path: Path) -> MeshSettings:
    try:
        return load_settings(path)
    except ValidationError as exc:
        _LOGGER.warning("Ignoring invalid settings file: %s", exc)
        return MeshSettings()


def create_app(
    sender: Optional[SenderService] = None,
    data_dir: Optional[Path] = None,
) -> FastAPI:
    """Construct the FastAPI application.

    ``data_dir`` holds ``settings.json``, ``mesh.json`` and the ``programs``
    directory; it defaults to the per-user application data directory.
    """

    data_dir = Path(data_dir) if data_dir is not None else default_data_dir()
    settings_path = data_dir / "settings.json"

    app = FastAPI(title="Surface Mesh API", version="1.0")

    sender_service = sender or SenderService()
    events = SenderEventManager()
    state = AppStateStore(AppState(settings=_initial_settings(settings_path)))
    orchestrator = Orchestrator(
        state,
        ProgramStore(data_dir / "programs"),
        MeshStore(data_dir / "mesh.json"),
        settings_path=settings_path,
    )

    sender_service.set_event_sink(events.publish)
    orchestrator.set_event_sink(events.publish)

    app.state.sender_service = sender_service
    app.state.sender_events = events
    app.state.app_state = state
    app.state.orchestrator = orchestrator

    allowed_origins: List[str] = [
        "http://localhost",
        "http://127.0.0.1",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def _startup() -> None:
        """Capture the running loop and restore the saved mesh."""

        events.set_loop(asyncio.get_running_loop())
        mesh = await asyncio.to_thread(orchestrator.load_saved_mesh)
        _LOGGER.info("Surface Mesh API ready (saved mesh: %s)", "yes" if mesh else "no")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        _LOGGER.info("Surface Mesh API shutting down")
        await asyncio.to_thread(orchestrator.close)

    app.include_router(sender_router)
    app.include_router(mesh_router)

    @app.get("/health")
    async def health() -> dict:
        """Simple health check endpoint."""

        return {"status": "ok"}

    return app


app = create_app()

__all__ = ["app", "create_app"]
