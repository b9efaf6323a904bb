"""Codec de payloads de detección de tren.

Valida y transforma mensajes MQTT al modelo de dominio DetectionEvent.

Formato esperado (ESP32):
{
    "state": "approaching",
    "rounds": 3,
    "relay": "activated",
    "timestamp": "2026-01-31T08:00:00"
}

El timestamp no lleva zona horaria y se interpreta como hora local. Si
llega con offset se convierte a hora local naive.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from common.domain import (
    MAX_LABEL_LENGTH,
    MAX_ROUNDS,
    DetectionEvent,
    parse_iso_datetime,
    to_local_naive,
)


REQUIRED_FIELDS = ("state", "rounds", "relay", "timestamp")


class DecodeError(Exception):
    """Payload que no puede convertirse en DetectionEvent (error permanente)."""

    MALFORMED_PAYLOAD = "malformed_payload"
    MISSING_FIELD = "missing_field"

    def __init__(self, reason: str, detail: str = "", field: Optional[str] = None):
        self.reason = reason
        self.detail = detail
        self.field = field
        message = reason if field is None else f"{reason}({field})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    @classmethod
    def malformed(cls, detail: str) -> "DecodeError":
        return cls(cls.MALFORMED_PAYLOAD, detail)

    @classmethod
    def missing_field(cls, name: str, detail: str = "") -> "DecodeError":
        return cls(cls.MISSING_FIELD, detail, field=name)


class DetectionPayload(BaseModel):
    """Schema de validación del payload publicado por el dispositivo."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    # Mismos límites que el collector: lo que no cabe se descarta aquí
    state: str = Field(..., max_length=MAX_LABEL_LENGTH, strict=True)
    rounds: int = Field(..., ge=0, le=MAX_ROUNDS, strict=True)
    relay: str = Field(..., max_length=MAX_LABEL_LENGTH, strict=True)
    timestamp: datetime

    @field_validator("state", "relay")
    @classmethod
    def not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("timestamp", mode="before")
    @classmethod
    def iso_string(cls, v: Any) -> Any:
        if not isinstance(v, str):
            raise ValueError("timestamp must be an ISO-8601 string")
        return parse_iso_datetime(v.strip())

    def to_event(self) -> DetectionEvent:
        return DetectionEvent(
            state=self.state,
            rounds=self.rounds,
            relay=self.relay,
            observed_at=to_local_naive(self.timestamp),
        )


class AcknowledgedPayload(DetectionPayload):
    """Respuesta del collector: mismo formato + identidad asignada."""

    id: Optional[int] = None
    recorded_at: Optional[datetime] = Field(default=None, alias="recordedAt")

    def to_event(self) -> DetectionEvent:
        event = super().to_event()
        if self.id is not None and self.recorded_at is not None:
            event = event.stored_as(self.id, to_local_naive(self.recorded_at))
        return event


def _first_invalid_field(exc: ValidationError) -> str:
    """Nombre del primer campo requerido con error (orden estable)."""
    failing = {str(err["loc"][0]) for err in exc.errors() if err.get("loc")}
    for name in REQUIRED_FIELDS:
        if name in failing:
            return name
    return sorted(failing)[0] if failing else "payload"


def decode_mapping(
    data: Any,
    model: type[DetectionPayload] = DetectionPayload,
) -> DetectionEvent:
    """Valida un dict ya parseado y lo convierte a DetectionEvent.

    Raises:
        DecodeError: MALFORMED_PAYLOAD si no es un objeto,
            MISSING_FIELD si falta un campo o tiene forma incorrecta
    """
    if not isinstance(data, dict):
        raise DecodeError.malformed(f"expected JSON object, got {type(data).__name__}")

    try:
        return model.model_validate(data).to_event()
    except ValidationError as e:
        name = _first_invalid_field(e)
        raise DecodeError.missing_field(name, detail=e.errors()[0].get("msg", ""))


def decode(raw_payload: Union[bytes, str]) -> DetectionEvent:
    """Decodifica el payload crudo de un mensaje MQTT.

    Función pura: no loguea ni tiene efectos secundarios.

    Raises:
        DecodeError
    """
    try:
        data = orjson.loads(raw_payload)
    except orjson.JSONDecodeError as e:
        raise DecodeError.malformed(str(e))

    return decode_mapping(data)


def encode(event: DetectionEvent) -> bytes:
    """Serializa al formato ESP32 (inverso de decode)."""
    return orjson.dumps(event.to_payload())
