"""Liveness / readiness del collector."""

import logging

from fastapi import APIRouter, HTTPException, Request
from sqlalchemy.exc import SQLAlchemyError

from common.db import ping

router = APIRouter(tags=["health"])
logger = logging.getLogger(__name__)


@router.get("/health")
def health():
    """El proceso responde; no toca la BD."""
    return {"status": "ok"}


@router.get("/ready")
def ready(request: Request):
    """SELECT 1 contra el engine del EventStore.

    No expone detalles del error al cliente.
    """
    try:
        ping(request.app.state.engine)
    except SQLAlchemyError:
        logger.exception("[API] Readiness check failed")
        raise HTTPException(status_code=503, detail="not ready")
    return {"status": "ready"}
