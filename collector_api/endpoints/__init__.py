"""Módulo de endpoints HTTP del collector."""

from .detections import router as detections_router
from .health import router as health_router
from .time_windows import router as time_windows_router

__all__ = [
    "detections_router",
    "health_router",
    "time_windows_router",
]
