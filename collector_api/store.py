"""EventStore - persistencia append-only de detecciones.

Orden canónico de lectura: observed_at DESC, id ASC (desempate por orden
de inserción). Las escrituras se serializan con un lock por store; las
lecturas van en paralelo y ven cada insert completo o nada (transacción).
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import DateTime, Integer, String, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from common.domain import DetectionEvent, DetectionStats, RelayState

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """La capa de almacenamiento no está disponible (reintentable)."""

    UNAVAILABLE = "unavailable"

    def __init__(self, detail: str = "", kind: str = UNAVAILABLE):
        self.kind = kind
        self.detail = detail
        super().__init__(f"{kind}: {detail}" if detail else kind)


_COLUMN_TYPES = dict(
    id=Integer,
    state=String,
    rounds=Integer,
    relay=String,
    observed_at=DateTime,
    recorded_at=DateTime,
)

_SELECT = "SELECT id, state, rounds, relay, observed_at, recorded_at FROM train_detections"
_ORDER = "ORDER BY observed_at DESC, id ASC"

_INSERT = text(
    """
    INSERT INTO train_detections (state, rounds, relay, observed_at, recorded_at, dedup_key)
    VALUES (:state, :rounds, :relay, :observed_at, :recorded_at, :dedup_key)
    RETURNING id
    """
).bindparams(
    bindparam("observed_at", type_=DateTime()),
    bindparam("recorded_at", type_=DateTime()),
)

_BY_ID = text(f"{_SELECT} WHERE id = :id").columns(**_COLUMN_TYPES)
_BY_DEDUP_KEY = text(f"{_SELECT} WHERE dedup_key = :dedup_key").columns(**_COLUMN_TYPES)
_ALL = text(f"{_SELECT} {_ORDER}").columns(**_COLUMN_TYPES)
_RECENT = text(f"{_SELECT} {_ORDER} LIMIT :limit").columns(**_COLUMN_TYPES)

_AGGREGATE = text(
    """
    SELECT
      COUNT(*) AS total,
      COALESCE(SUM(CASE WHEN relay = :activated THEN 1 ELSE 0 END), 0) AS activated,
      COALESCE(MAX(rounds), 0) AS max_rounds
    FROM train_detections
    """
)


def _row_to_event(row) -> DetectionEvent:
    return DetectionEvent(
        id=int(row.id),
        state=str(row.state),
        rounds=int(row.rounds),
        relay=str(row.relay),
        observed_at=row.observed_at,
        recorded_at=row.recorded_at,
    )


class EventStore:
    """Store de DetectionEvents sobre SQLAlchemy."""

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = datetime.now):
        self._engine = engine
        self._clock = clock
        self._write_lock = threading.Lock()

    def insert(self, event: DetectionEvent, idempotency_key: Optional[str] = None) -> DetectionEvent:
        """Asigna id y recorded_at, persiste y retorna la copia almacenada.

        Con `idempotency_key`, un segundo insert con la misma clave retorna
        el evento ya almacenado sin crear otra fila.

        Raises:
            StoreError: si la BD no está disponible
        """
        try:
            with self._write_lock, self._engine.begin() as conn:
                if idempotency_key:
                    existing = conn.execute(_BY_DEDUP_KEY, {"dedup_key": idempotency_key}).fetchone()
                    if existing is not None:
                        logger.info(
                            "[STORE] Duplicate insert ignored key=%s id=%s",
                            idempotency_key,
                            existing.id,
                        )
                        return _row_to_event(existing)

                recorded_at = self._clock()
                event_id = conn.execute(
                    _INSERT,
                    {
                        "state": event.state,
                        "rounds": int(event.rounds),
                        "relay": event.relay,
                        "observed_at": event.observed_at,
                        "recorded_at": recorded_at,
                        "dedup_key": idempotency_key,
                    },
                ).scalar_one()
        except IntegrityError as e:
            # Otro proceso insertó la misma clave entre el SELECT y el INSERT
            existing = self._fetch_one(_BY_DEDUP_KEY, {"dedup_key": idempotency_key}) if idempotency_key else None
            if existing is None:
                logger.exception("[STORE] Insert failed")
                raise StoreError(type(e).__name__) from e
            return _row_to_event(existing)
        except SQLAlchemyError as e:
            logger.exception("[STORE] Insert failed")
            raise StoreError(type(e).__name__) from e

        logger.debug("[STORE] Inserted id=%s state=%s relay=%s", event_id, event.state, event.relay)
        return event.stored_as(int(event_id), recorded_at)

    def get_by_id(self, event_id: int) -> Optional[DetectionEvent]:
        """Retorna el evento o None si no existe."""
        row = self._fetch_one(_BY_ID, {"id": int(event_id)})
        return _row_to_event(row) if row is not None else None

    def list_all(self) -> List[DetectionEvent]:
        """Snapshot completo, observed_at DESC / id ASC."""
        return [_row_to_event(r) for r in self._fetch_all(_ALL, {})]

    def list_recent(self, n: int) -> List[DetectionEvent]:
        """Como list_all() pero limitado a los n primeros."""
        if n <= 0:
            return []
        return [_row_to_event(r) for r in self._fetch_all(_RECENT, {"limit": int(n)})]

    def aggregate(self) -> DetectionStats:
        """Conteos y máximo calculados en una sola consulta (snapshot consistente)."""
        row = self._fetch_one(_AGGREGATE, {"activated": RelayState.ACTIVATED})
        return DetectionStats(
            total=int(row.total),
            activated=int(row.activated),
            max_rounds=int(row.max_rounds),
        )

    def _fetch_one(self, stmt, params: dict):
        try:
            with self._engine.connect() as conn:
                return conn.execute(stmt, params).fetchone()
        except SQLAlchemyError as e:
            logger.exception("[STORE] Query failed")
            raise StoreError(type(e).__name__) from e

    def _fetch_all(self, stmt, params: dict) -> list:
        try:
            with self._engine.connect() as conn:
                return conn.execute(stmt, params).fetchall()
        except SQLAlchemyError as e:
            logger.exception("[STORE] Query failed")
            raise StoreError(type(e).__name__) from e
