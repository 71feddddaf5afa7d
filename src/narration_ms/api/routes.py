"""
Narration API Routes.

Endpoints:
    POST  /v1/speak              - Narrate text (plays, queues or defers)
    GET   /v1/status             - Client, breaker, settings, metrics, playback
    PATCH /v1/settings           - Update audio settings (clamped)
    POST  /v1/volume             - Set volume for playing and future audio
    POST  /v1/stop               - Stop everything and clear the backlog
    POST  /v1/reset              - Reset the circuit breaker
    POST  /v1/client/initialize  - (Re)initialize the Polly client
    GET   /health                - Health check
    GET   /metrics               - Prometheus metrics
    WS    /v1/device             - Playback channel to the game page

Error Handling:
    Dropped and failed requests return the SpeakResponse body with
    ``ok: false`` and the error kind. HTTP status codes are mapped from
    the kind:
        - INVALID_INPUT, INVALID_PARAMETER -> 400 Bad Request
        - RATE_LIMITED -> 429 Too Many Requests
        - CLIENT_UNAVAILABLE, CIRCUIT_OPEN, CREDENTIALS -> 503
        - NETWORK, SERVICE_UNAVAILABLE, STREAM_ERROR -> 502 Bad Gateway
        - TIMEOUT -> 504 Gateway Timeout
        - anything else -> 500
    Queued and deferred requests return 202 Accepted.
"""
from __future__ import annotations

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Response, WebSocket
from fastapi.responses import JSONResponse

from narration_ms.api.dependencies import get_narration_manager
from narration_ms.api.schemas import (
    InitializeRequest,
    SettingsUpdate,
    SpeakRequest,
    SpeakResponse,
    VolumeRequest,
)
from narration_ms.core.config import ConfigValidationError
from narration_ms.core.logging import get_logger, info, set_request_id, warn
from narration_ms.devices.browser import BrowserPlaybackDevice
from narration_ms.narration.errors import ErrorKind
from narration_ms.narration.result import SpeakStatus
from narration_ms.services.narration_service import NarrationManager

router = APIRouter()

_LOG = get_logger("narration-ms.api")

STATUS_MAP = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_PARAMETER: 400,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.CLIENT_UNAVAILABLE: 503,
    ErrorKind.CIRCUIT_OPEN: 503,
    ErrorKind.CREDENTIALS: 503,
    ErrorKind.NETWORK: 502,
    ErrorKind.SERVICE_UNAVAILABLE: 502,
    ErrorKind.STREAM_ERROR: 502,
    ErrorKind.TIMEOUT: 504,
}


@router.post("/v1/speak", response_model=SpeakResponse)
async def speak(
    req: SpeakRequest,
    manager: NarrationManager = Depends(get_narration_manager),
):
    """
    Narrate one text.

    Returns 200 once playback started, 202 when queued or deferred for a
    user gesture, and an error status when dropped or failed.
    """
    rid = str(uuid.uuid4())[:12]
    set_request_id(rid)

    result = await manager.speak(req.text, request_id=rid)
    body = result.to_dict()

    if result.error:
        return JSONResponse(status_code=STATUS_MAP.get(result.error, 500), content=body)
    if result.status in (SpeakStatus.QUEUED, SpeakStatus.DEFERRED):
        return JSONResponse(status_code=202, content=body)
    return JSONResponse(status_code=200, content=body)


@router.get("/v1/status")
def status(manager: NarrationManager = Depends(get_narration_manager)):
    return manager.get_status()


@router.patch("/v1/settings")
async def update_settings(
    req: SettingsUpdate,
    manager: NarrationManager = Depends(get_narration_manager),
):
    try:
        changed = await manager.configure(**req.model_dump(exclude_none=True))
    except ConfigValidationError as e:
        warn(_LOG, "settings_rejected", message=str(e))
        return JSONResponse(status_code=400, content={"ok": False, "error": ErrorKind.INVALID_PARAMETER, "message": str(e)})
    return {"ok": True, "changed": changed, "settings": manager.audio.to_dict()}


@router.post("/v1/volume")
async def set_volume(
    req: VolumeRequest,
    manager: NarrationManager = Depends(get_narration_manager),
):
    try:
        level = await manager.set_volume(req.volume)
    except ConfigValidationError as e:
        warn(_LOG, "volume_rejected", message=str(e))
        return JSONResponse(status_code=400, content={"ok": False, "error": ErrorKind.INVALID_PARAMETER, "message": str(e)})
    return {"ok": True, "volume": level}


@router.post("/v1/stop")
async def stop_all(manager: NarrationManager = Depends(get_narration_manager)):
    summary = await manager.stop_all()
    return {"ok": True, **summary}


@router.post("/v1/reset")
def reset_errors(manager: NarrationManager = Depends(get_narration_manager)):
    manager.reset_errors()
    return {"ok": True, "error_count": manager.breaker.failure_count}


@router.post("/v1/client/initialize")
def initialize_client(
    req: Optional[InitializeRequest] = None,
    manager: NarrationManager = Depends(get_narration_manager),
):
    overrides = req.model_dump(exclude_none=True) if req is not None else None
    if manager.initialize(overrides or None):
        return {"ok": True, "client_state": manager.client.state.value, "region": manager.client.region}
    return JSONResponse(
        status_code=400,
        content={
            "ok": False,
            "error": ErrorKind.CLIENT_UNAVAILABLE,
            "message": "client initialization failed, check credentials",
        },
    )


@router.get("/health")
def health(manager: NarrationManager = Depends(get_narration_manager)):
    return manager.get_health_info()


@router.get("/metrics")
def prometheus_metrics(manager: NarrationManager = Depends(get_narration_manager)):
    content, content_type = manager.metrics.get_metrics_response()
    return Response(content=content, media_type=content_type)


@router.websocket("/v1/device")
async def device_channel(
    websocket: WebSocket,
    manager: NarrationManager = Depends(get_narration_manager),
):
    """Playback channel: the game page plays what the manager sends here."""
    device = manager.device
    if not isinstance(device, BrowserPlaybackDevice):
        warn(_LOG, "device_channel_unavailable", device=type(device).__name__)
        await websocket.close(code=1011)
        return

    await websocket.accept()
    info(_LOG, "device_channel_open")
    await device.serve(websocket)
