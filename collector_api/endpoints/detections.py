"""Endpoints de detecciones de tren (ingesta + consulta)."""

from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, Header, HTTPException

from ..auth import require_api_key
from ..schemas import DetectionIn, DetectionOut, DetectionStatsOut
from ..stats import DetectionQueryService
from ..store import EventStore
from .deps import get_event_store, get_query_service

router = APIRouter(prefix="/api/train", tags=["train"])
logger = logging.getLogger(__name__)


@router.post(
    "/detection",
    response_model=DetectionOut,
    dependencies=[Depends(require_api_key)],
)
def post_detection(
    payload: DetectionIn,
    store: EventStore = Depends(get_event_store),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """Punto de entrada de ingesta (lo invoca el bridge MQTT).

    Con Idempotency-Key, un reintento del mismo evento retorna la fila
    ya almacenada en lugar de duplicarla.
    """
    stored = store.insert(payload.to_event(), idempotency_key=idempotency_key)
    logger.info(
        "[API] Detection stored id=%s state=%s rounds=%d relay=%s",
        stored.id,
        stored.state,
        stored.rounds,
        stored.relay,
    )
    return DetectionOut.from_event(stored)


@router.get("/detection", response_model=List[DetectionOut])
def get_all_detections(service: DetectionQueryService = Depends(get_query_service)):
    """Historial completo, más reciente primero."""
    return [DetectionOut.from_event(e) for e in service.history()]


@router.get("/detection/latest", response_model=DetectionOut)
def get_latest_detection(service: DetectionQueryService = Depends(get_query_service)):
    latest = service.latest()
    if latest is None:
        raise HTTPException(status_code=404, detail="No detections recorded")
    return DetectionOut.from_event(latest)


@router.get("/detection/{detection_id}", response_model=DetectionOut)
def get_detection_by_id(
    detection_id: int,
    service: DetectionQueryService = Depends(get_query_service),
):
    event = service.get(detection_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Detection not found")
    return DetectionOut.from_event(event)


@router.get("/stats", response_model=DetectionStatsOut)
def get_stats(service: DetectionQueryService = Depends(get_query_service)):
    return DetectionStatsOut.from_stats(service.stats())
