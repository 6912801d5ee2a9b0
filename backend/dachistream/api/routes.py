"""HTTP routes for the DachiStream control plane."""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from ..config.settings import AppConfig
from ..engine.scheduler import MAX_CYCLE_INTERVAL, MIN_CYCLE_INTERVAL, DachiStreamService
from .events import MonitorEventBus


def auth_dependency(config: AppConfig):
    def _auth(x_control_key: str = Header(default="")) -> None:
        if x_control_key != config.control_key:
            raise HTTPException(status_code=401, detail="Unauthorized")
    return _auth


def build_router(config: AppConfig, service: DachiStreamService, bus: MonitorEventBus) -> APIRouter:
    router = APIRouter()
    _auth = auth_dependency(config)

    @router.get("/healthz")
    async def healthz() -> JSONResponse:
        return JSONResponse({"ok": True, "clients": len(bus.clients), "running": service.is_running})

    @router.get("/api/dachistream/state")
    async def get_state() -> JSONResponse:
        return JSONResponse(service.get_state().to_dict())

    @router.get("/api/dachistream/logs")
    async def get_logs() -> JSONResponse:
        return JSONResponse([entry.to_dict() for entry in service.get_logs()])

    @router.get("/api/dachistream/buffer")
    async def get_buffer() -> JSONResponse:
        return JSONResponse([m.to_dict() for m in service.get_buffer_messages()])

    @router.get("/api/dachistream/status")
    async def get_status() -> JSONResponse:
        return JSONResponse(service.get_buffer_status())

    @router.post("/api/dachistream/pause")
    async def pause(_: None = Depends(_auth)) -> JSONResponse:
        service.pause()
        return JSONResponse({"success": True, "message": "DachiStream paused"})

    @router.post("/api/dachistream/resume")
    async def resume(_: None = Depends(_auth)) -> JSONResponse:
        service.resume()
        return JSONResponse({"success": True, "message": "DachiStream resumed"})

    @router.post("/api/dachistream/interval")
    async def set_interval(body: Dict[str, Any], _: None = Depends(_auth)) -> JSONResponse:
        seconds = body.get("seconds")
        if not service.update_cycle_interval(seconds):
            raise HTTPException(
                status_code=400,
                detail=f"seconds must be an integer between {MIN_CYCLE_INTERVAL} and {MAX_CYCLE_INTERVAL}",
            )
        return JSONResponse({"success": True, "seconds": service.cycle_interval})

    return router
