"""
FastAPI REST API Layer for narration-ms.

This package defines all HTTP and WebSocket endpoints:
    - routes.py: Narration endpoints (/v1/speak, /v1/status, /health, /metrics, /v1/device)
    - schemas.py: Request/response Pydantic models
    - dependencies.py: FastAPI dependency injection
"""
