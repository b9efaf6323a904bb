"""Modelos de dominio compartidos por el bridge y el collector."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

# Límites de las columnas de train_detections (INTEGER / VARCHAR(64))
MAX_ROUNDS = 2**31 - 1
MAX_LABEL_LENGTH = 64

_ISO_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def parse_iso_datetime(value: str) -> datetime:
    """Parsea ISO-8601 extendido (YYYY-MM-DD[THH:MM[:SS[.ffffff]]][offset|Z]).

    Strings numéricos (epoch) no son ISO-8601 y se rechazan.

    Raises:
        ValueError
    """
    if not _ISO_DATE_PREFIX.match(value):
        raise ValueError(f"not an ISO-8601 datetime: {value!r}")
    if value.endswith(("Z", "z")):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def to_local_naive(dt: datetime) -> datetime:
    """Timestamps sin zona se tratan como hora local; con offset se convierten."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone().replace(tzinfo=None)


class RelayState:
    """Vocabulario del campo relay."""

    ACTIVATED = "activated"
    NOT_ACTIVATED = "not_activated"


@dataclass(frozen=True)
class DetectionEvent:
    """Detección de tren - modelo canónico de dominio.

    Este es el contrato único que fluye por todo el pipeline:
    MQTT → Codec → Relay → Collector → EventStore

    `id` y `recorded_at` los asigna el EventStore al insertar; mientras el
    evento viaja por el bridge ambos son None.
    """

    state: str
    rounds: int
    relay: str
    observed_at: datetime
    id: Optional[int] = None
    recorded_at: Optional[datetime] = None

    @property
    def activated(self) -> bool:
        return self.relay == RelayState.ACTIVATED

    @property
    def is_stored(self) -> bool:
        return self.id is not None and self.recorded_at is not None

    def stored_as(self, event_id: int, recorded_at: datetime) -> "DetectionEvent":
        """Copia con identidad asignada por el store."""
        return replace(self, id=event_id, recorded_at=recorded_at)

    def to_payload(self) -> dict:
        """Formato ESP32 {state, rounds, relay, timestamp}."""
        return {
            "state": self.state,
            "rounds": self.rounds,
            "relay": self.relay,
            "timestamp": self.observed_at.isoformat(),
        }

    def dedup_key(self) -> str:
        """Clave de idempotencia derivada del contenido.

        FORMATO: MD5(state:rounds:relay:timestamp)[:16]
        """
        data = f"{self.state}:{self.rounds}:{self.relay}:{self.observed_at.isoformat()}"
        return hashlib.md5(data.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class TimeWindowRecord:
    """Registro genérico de ventana temporal (begin/end)."""

    begin: datetime
    end: datetime
    id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class DetectionStats:
    """Agregados sobre todas las detecciones almacenadas."""

    total: int = 0
    activated: int = 0
    max_rounds: int = 0

    @property
    def not_activated(self) -> int:
        return self.total - self.activated
