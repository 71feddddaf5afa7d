"""
API Request/Response Schemas.

Pydantic models for the narration endpoints. Out-of-range audio settings are
clamped by the manager, not rejected here.

Example Request (POST /v1/speak):
    {"text": "The goblin king has fallen."}

Example Response:
    {"ok": true, "status": "playing", "request_id": "1f2e3d4c5b6a",
     "truncated": false, "resource_id": "audio-7", "response_time_ms": 412.5}
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class SpeakRequest(BaseModel):
    text: str = Field(
        ...,
        description="Narration text. Longer than 3000 characters is truncated; blank is rejected.",
    )


class SpeakResponse(BaseModel):
    ok: bool
    status: str = Field(..., description="playing | queued | deferred | dropped | failed | cancelled")
    request_id: str
    truncated: bool = False
    error: Optional[str] = Field(default=None, description="Error kind when dropped or failed")
    message: Optional[str] = None
    resource_id: Optional[str] = None
    response_time_ms: Optional[float] = None


class SettingsUpdate(BaseModel):
    """Partial audio settings update; every field is optional and clamped."""
    max_concurrent_audio: Optional[float] = Field(default=None, description="Clamped to [1, 10]")
    default_volume: Optional[float] = Field(default=None, description="Clamped to [0, 1]")
    fade_out_duration_ms: Optional[float] = Field(default=None, description="Clamped to [0, 5000]")
    queue_processing_delay_ms: Optional[float] = Field(default=None, description="Clamped to >= 0")


class VolumeRequest(BaseModel):
    volume: float = Field(..., description="Clamped to [0, 1]")


class InitializeRequest(BaseModel):
    """Client (re)initialization. Omitted fields keep their configured values."""
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    region: Optional[str] = None
    voice_id: Optional[str] = None
    output_format: Optional[str] = None
    engine: Optional[str] = None
