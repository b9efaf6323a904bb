from __future__ import annotations

import logging

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool


logger = logging.getLogger(__name__)


_SCHEMA = {
    "sqlite": [
        """
        CREATE TABLE IF NOT EXISTS train_detections (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          state VARCHAR(64) NOT NULL,
          rounds INTEGER NOT NULL,
          relay VARCHAR(64) NOT NULL,
          observed_at TIMESTAMP NOT NULL,
          recorded_at TIMESTAMP NOT NULL,
          dedup_key VARCHAR(32) NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS datetime_records (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          begin_datetime TIMESTAMP NOT NULL,
          end_datetime TIMESTAMP NOT NULL,
          created_at TIMESTAMP NOT NULL
        )
        """,
    ],
    "postgresql": [
        """
        CREATE TABLE IF NOT EXISTS train_detections (
          id BIGSERIAL PRIMARY KEY,
          state VARCHAR(64) NOT NULL,
          rounds INTEGER NOT NULL,
          relay VARCHAR(64) NOT NULL,
          observed_at TIMESTAMP NOT NULL,
          recorded_at TIMESTAMP NOT NULL,
          dedup_key VARCHAR(32) NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS datetime_records (
          id BIGSERIAL PRIMARY KEY,
          begin_datetime TIMESTAMP NOT NULL,
          end_datetime TIMESTAMP NOT NULL,
          created_at TIMESTAMP NOT NULL
        )
        """,
    ],
}

# Comunes a ambos dialectos. NULL en dedup_key no colisiona en el índice único.
_INDEXES = [
    "CREATE UNIQUE INDEX IF NOT EXISTS ux_train_detections_dedup_key ON train_detections (dedup_key)",
    "CREATE INDEX IF NOT EXISTS ix_train_detections_observed_at ON train_detections (observed_at, id)",
    "CREATE INDEX IF NOT EXISTS ix_datetime_records_created_at ON datetime_records (created_at, id)",
]


def create_db_engine(database_url: str) -> Engine:
    """Crea el engine del collector.

    SQLite en memoria usa StaticPool para que todas las conexiones vean
    la misma base (tests y modo dev).
    """
    url = make_url(database_url)

    # Log básico de parámetros de conexión (sin contraseña)
    logger.info(
        "[DB] Creating engine dialect=%s host=%s db=%s",
        url.get_backend_name(),
        url.host,
        url.database,
    )

    if url.get_backend_name() == "sqlite":
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url.database in (None, "", ":memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, future=True, **kwargs)

    return create_engine(url, pool_pre_ping=True, pool_recycle=300, future=True)


def ensure_schema(engine: Engine) -> None:
    """Crea tablas e índices si no existen. Idempotente."""
    dialect = engine.dialect.name
    if dialect not in _SCHEMA:
        raise ValueError(f"Unsupported database dialect: {dialect}")

    with engine.begin() as conn:
        for statement in _SCHEMA[dialect] + _INDEXES:
            conn.execute(text(statement))

    logger.info("[DB] Schema ready (dialect=%s)", dialect)


def ping(engine: Engine) -> None:
    """SELECT 1 - propaga la excepción si la BD no responde."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
