"""App FastAPI del collector.

Ejecutar:
    train-collector
    uvicorn collector_api.main:create_app --factory --port 8080
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine

from common.config import CollectorSettings, ConfigError, get_collector_settings
from common.db import create_db_engine, ensure_schema
from .endpoints import detections_router, health_router, time_windows_router
from .stats import DetectionQueryService
from .store import EventStore, StoreError
from .time_windows import TimeWindowRepository

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[CollectorSettings] = None,
    engine: Optional[Engine] = None,
) -> FastAPI:
    """Construye la app con sus componentes explícitos (sin singletons)."""
    settings = settings or get_collector_settings()
    engine = engine or create_db_engine(settings.database_url)
    ensure_schema(engine)

    app = FastAPI(title="Train Detection Collector", version="0.1.0")

    store = EventStore(engine)
    app.state.settings = settings
    app.state.engine = engine
    app.state.event_store = store
    app.state.query_service = DetectionQueryService(store)
    app.state.time_windows = TimeWindowRepository(engine)

    app.include_router(health_router)
    app.include_router(detections_router)
    app.include_router(time_windows_router)

    @app.exception_handler(StoreError)
    def store_unavailable(request: Request, exc: StoreError):
        # No exponer detalles de la BD al cliente; solo loguear internamente
        logger.error("[API] Store unavailable on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=503,
            content={"detail": "Storage temporarily unavailable"},
            headers={"Retry-After": "1"},
        )

    return app


def main() -> None:
    try:
        settings = get_collector_settings()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("[CONFIG] Invalid configuration: %s", e)
        sys.exit(2)

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    app = create_app(settings)
    logger.info("Collector listening on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
