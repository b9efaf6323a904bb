"""Dependencias FastAPI: componentes construidos en create_app()."""

from __future__ import annotations

from fastapi import Request

from ..stats import DetectionQueryService
from ..store import EventStore
from ..time_windows import TimeWindowRepository


def get_event_store(request: Request) -> EventStore:
    return request.app.state.event_store


def get_query_service(request: Request) -> DetectionQueryService:
    return request.app.state.query_service


def get_time_windows(request: Request) -> TimeWindowRepository:
    return request.app.state.time_windows
