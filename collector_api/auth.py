"""Autenticación por API Key para endpoints de escritura.

Si COLLECTOR_API_KEY no está configurado se permite el acceso (modo dev).
"""

from __future__ import annotations

import logging

from fastapi import Header, HTTPException, Request

logger = logging.getLogger(__name__)


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> None:
    expected = request.app.state.settings.api_key
    if not expected:
        return

    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key required")

    if x_api_key != expected:
        logger.warning("[API] Invalid API key attempt from request")
        raise HTTPException(status_code=401, detail="Invalid API key")
