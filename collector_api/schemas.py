from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from common.domain import (
    MAX_LABEL_LENGTH,
    MAX_ROUNDS,
    DetectionEvent,
    DetectionStats,
    TimeWindowRecord,
    parse_iso_datetime,
    to_local_naive,
)


class DetectionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    # Formato ESP32 (mismo payload que publica el dispositivo por MQTT)
    state: str = Field(..., min_length=1, max_length=MAX_LABEL_LENGTH)
    rounds: int = Field(..., ge=0, le=MAX_ROUNDS)
    relay: str = Field(..., min_length=1, max_length=MAX_LABEL_LENGTH)
    timestamp: datetime

    @field_validator("timestamp", mode="before")
    @classmethod
    def iso_timestamp(cls, v: Any) -> Any:
        # Solo ISO-8601: sin epoch numérico
        if isinstance(v, datetime):
            return v
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


class DetectionOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    state: str
    rounds: int
    relay: str
    timestamp: datetime
    recorded_at: datetime = Field(..., alias="recordedAt")

    @classmethod
    def from_event(cls, event: DetectionEvent) -> "DetectionOut":
        return cls(
            id=event.id,
            state=event.state,
            rounds=event.rounds,
            relay=event.relay,
            timestamp=event.observed_at,
            recorded_at=event.recorded_at,
        )


class DetectionStatsOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_detections: int = Field(..., alias="totalDetections")
    activated_count: int = Field(..., alias="activatedCount")
    not_activated_count: int = Field(..., alias="notActivatedCount")
    max_rounds: int = Field(..., alias="maxRounds")

    @classmethod
    def from_stats(cls, stats: DetectionStats) -> "DetectionStatsOut":
        return cls(
            total_detections=stats.total,
            activated_count=stats.activated,
            not_activated_count=stats.not_activated,
            max_rounds=stats.max_rounds,
        )


class TimeWindowIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    begin: datetime = Field(..., alias="beginDateTime")
    end: datetime = Field(..., alias="endDateTime")

    @model_validator(mode="after")
    def begin_before_end(self) -> "TimeWindowIn":
        self.begin = to_local_naive(self.begin)
        self.end = to_local_naive(self.end)
        if self.begin > self.end:
            raise ValueError("beginDateTime must not be after endDateTime")
        return self


class TimeWindowOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    begin: datetime = Field(..., alias="beginDateTime")
    end: datetime = Field(..., alias="endDateTime")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    @classmethod
    def from_record(cls, record: TimeWindowRecord) -> "TimeWindowOut":
        return cls(id=record.id, begin=record.begin, end=record.end, created_at=record.created_at)
