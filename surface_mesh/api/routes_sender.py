"""FastAPI router exposing GRBL sender operations."""

from __future__ import annotations

import asyncio
import threading

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field
from starlette.websockets import WebSocket, WebSocketDisconnect

from surface_mesh._logging import get_logger
from surface_mesh.sender.service import (
    SenderError,
    SenderService,
    SenderStateError,
)


_LOGGER = get_logger(__name__)


class SenderEventManager:
    """Thread-safe fan-out for sender and probing events towards websocket clients."""

    def __init__(self) -> None:
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self._lock = threading.RLock()

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Store the asyncio loop used for thread-safe callbacks."""

        self._loop = loop

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscribers.discard(queue)

    def publish(self, event: dict) -> None:
        """Forward ``event`` into all subscriber queues; no-op before startup."""

        loop = self._loop
        if loop is None or loop.is_closed():
            return
        with self._lock:
            subscribers = list(self._subscribers)
        for queue in subscribers:
            loop.call_soon_threadsafe(queue.put_nowait, event)


router = APIRouter(prefix="/sender", tags=["sender"])


class OpenPortRequest(BaseModel):
    """Request body for opening a serial port."""

    port: str
    baud: int = 115200


class CommandRequest(BaseModel):
    """Single line sent synchronously to the controller."""

    gcode: str = Field(..., min_length=1)


def get_sender(request: Request) -> SenderService:
    """Resolve the shared SenderService from the FastAPI app state."""

    return request.app.state.sender_service


def _handle_sender_exception(exc: Exception) -> None:
    """Convert sender errors into HTTP exceptions."""

    if isinstance(exc, SenderStateError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, SenderError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    raise exc


@router.get("/ports")
async def list_ports(sender: SenderService = Depends(get_sender)) -> dict:
    """List available serial ports on the host."""

    ports = await asyncio.to_thread(sender.list_ports)
    return {"ports": ports}


@router.post("/open")
async def open_port(payload: OpenPortRequest, sender: SenderService = Depends(get_sender)) -> dict:
    """Open a serial connection to the GRBL controller."""

    success, message = await asyncio.to_thread(sender.open, payload.port, payload.baud)
    if not success:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)
    return {"status": "opened", "port": payload.port, "baud": payload.baud}


@router.post("/close")
async def close_port(sender: SenderService = Depends(get_sender)) -> dict:
    await asyncio.to_thread(sender.close)
    return {"status": "closed"}


@router.get("/status")
async def sender_status(sender: SenderService = Depends(get_sender)) -> dict:
    """Return the cached machine status snapshot."""

    return await asyncio.to_thread(sender.status)


@router.post("/command")
async def send_command(payload: CommandRequest, sender: SenderService = Depends(get_sender)) -> dict:
    """Send one line and wait for the controller acknowledgement."""

    result = await asyncio.to_thread(sender.send_command, payload.gcode, "manual")
    if not result.ok:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=result.error)
    return {"status": "ok", "gcode": payload.gcode}


async def _invoke_simple(sender: SenderService, method: str) -> dict:
    """Invoke a simple sender method without arguments."""

    try:
        await asyncio.to_thread(getattr(sender, method))
    except Exception as exc:
        _handle_sender_exception(exc)
    return {"status": method}


@router.post("/hold")
async def hold(sender: SenderService = Depends(get_sender)) -> dict:
    """Issue the GRBL feed hold command."""

    return await _invoke_simple(sender, "hold")


@router.post("/start")
async def start(sender: SenderService = Depends(get_sender)) -> dict:
    """Resume execution after a hold."""

    return await _invoke_simple(sender, "start")


@router.post("/reset")
async def reset(sender: SenderService = Depends(get_sender)) -> dict:
    return await _invoke_simple(sender, "reset")


@router.websocket("/ws")
async def sender_events(websocket: WebSocket) -> None:
    """Stream sender and probing events over a websocket connection."""

    await websocket.accept()
    manager: SenderEventManager = websocket.app.state.sender_events
    sender: SenderService = websocket.app.state.sender_service
    queue = manager.subscribe()
    try:
        await websocket.send_json({"type": "state", "data": await asyncio.to_thread(sender.status)})
        while True:
            event = await queue.get()
            await websocket.send_json(event)
    except WebSocketDisconnect:
        _LOGGER.debug("Sender websocket disconnected")
    except Exception as exc:  # pragma: no cover - network failures
        _LOGGER.warning("Sender websocket error: %s", exc)
    finally:
        manager.unsubscribe(queue)


__all__ = ["router", "SenderEventManager", "get_sender"]
