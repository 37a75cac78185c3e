"""Route handlers for the kube-pat REST API.

Dependencies (controller, cache, translator) are read from ``app.state``,
populated by ``create_app``.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from kubepat.api.schemas import (
    CacheStats,
    ErrorResponse,
    HealthResponse,
    ReadinessResponse,
    RulesResponse,
    StatusResponse,
)
from kubepat.errors import PacketFilterError

router = APIRouter()
health = APIRouter()


@health.get("/healthz", response_model=HealthResponse)
async def healthz() -> HealthResponse:
    from kubepat import __version__

    return HealthResponse(status="ok", version=__version__)


@health.get("/readyz", response_model=ReadinessResponse)
async def readyz(request: Request) -> JSONResponse:
    controller = request.app.state.controller
    cache = request.app.state.cache
    body = ReadinessResponse(
        ready=controller.running and cache.synced,
        controller=controller.state.value,
        cache_synced=cache.synced,
    )
    return JSONResponse(status_code=200 if body.ready else 503, content=body.model_dump())


@router.get("/status", response_model=StatusResponse)
async def status(request: Request) -> StatusResponse:
    from kubepat import __version__

    controller = request.app.state.controller
    cache = request.app.state.cache
    report = controller.last_report
    return StatusResponse(
        version=__version__,
        controller=controller.state.value,
        passes=controller.passes,
        interface=request.app.state.translator.interface,
        cache=CacheStats(
            translations=len(cache.translations),
            services=len(cache.services),
            synced=cache.synced,
        ),
        last_pass=report.to_dict() if report is not None else None,
    )


@router.get("/rules", response_model=RulesResponse)
async def rules(request: Request) -> RulesResponse | JSONResponse:
    try:
        installed = await request.app.state.translator.rules()
    except PacketFilterError as exc:
        return JSONResponse(
            status_code=502,
            content=ErrorResponse(error="PACKET_FILTER_ERROR", detail=str(exc)).model_dump(),
        )
    return RulesResponse(rules=installed)
