"""Servicio de lectura sobre el EventStore.

Funciones de consulta sin efectos secundarios: último evento, historial
completo y estadísticas derivadas.
"""

from __future__ import annotations

from typing import List, Optional

from common.domain import DetectionEvent, DetectionStats
from .store import EventStore


class DetectionQueryService:
    def __init__(self, store: EventStore):
        self._store = store

    def latest(self) -> Optional[DetectionEvent]:
        """Primer elemento de list_recent(1), o None si el store está vacío."""
        recent = self._store.list_recent(1)
        return recent[0] if recent else None

    def history(self) -> List[DetectionEvent]:
        return self._store.list_all()

    def get(self, event_id: int) -> Optional[DetectionEvent]:
        return self._store.get_by_id(event_id)

    def stats(self) -> DetectionStats:
        """total / activated / not_activated / max_rounds (0 si vacío)."""
        return self._store.aggregate()
