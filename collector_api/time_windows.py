"""Repositorio de registros de ventana temporal (begin/end).

Colaborador genérico CRUD que comparte el engine con el EventStore.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, List, Optional

from sqlalchemy import DateTime, Integer, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from common.domain import TimeWindowRecord
from .store import StoreError

logger = logging.getLogger(__name__)

_COLUMN_TYPES = dict(
    id=Integer,
    begin_datetime=DateTime,
    end_datetime=DateTime,
    created_at=DateTime,
)

_SELECT = "SELECT id, begin_datetime, end_datetime, created_at FROM datetime_records"

_BY_ID = text(f"{_SELECT} WHERE id = :id").columns(**_COLUMN_TYPES)
_ALL = text(f"{_SELECT} ORDER BY created_at DESC, id ASC").columns(**_COLUMN_TYPES)

_DATETIME_PARAMS = (
    bindparam("begin_datetime", type_=DateTime()),
    bindparam("end_datetime", type_=DateTime()),
)

_INSERT = text(
    """
    INSERT INTO datetime_records (begin_datetime, end_datetime, created_at)
    VALUES (:begin_datetime, :end_datetime, :created_at)
    RETURNING id
    """
).bindparams(*_DATETIME_PARAMS, bindparam("created_at", type_=DateTime()))

_UPDATE = text(
    """
    UPDATE datetime_records
    SET begin_datetime = :begin_datetime, end_datetime = :end_datetime
    WHERE id = :id
    """
).bindparams(*_DATETIME_PARAMS)

_DELETE = text("DELETE FROM datetime_records WHERE id = :id")


def _row_to_record(row) -> TimeWindowRecord:
    return TimeWindowRecord(
        id=int(row.id),
        begin=row.begin_datetime,
        end=row.end_datetime,
        created_at=row.created_at,
    )


class TimeWindowRepository:
    def __init__(self, engine: Engine, clock: Callable[[], datetime] = datetime.now):
        self._engine = engine
        self._clock = clock

    def create(self, begin: datetime, end: datetime) -> TimeWindowRecord:
        created_at = self._clock()
        try:
            with self._engine.begin() as conn:
                record_id = conn.execute(
                    _INSERT,
                    {"begin_datetime": begin, "end_datetime": end, "created_at": created_at},
                ).scalar_one()
        except SQLAlchemyError as e:
            logger.exception("[STORE] Time window insert failed")
            raise StoreError(type(e).__name__) from e
        return TimeWindowRecord(id=int(record_id), begin=begin, end=end, created_at=created_at)

    def get(self, record_id: int) -> Optional[TimeWindowRecord]:
        try:
            with self._engine.connect() as conn:
                row = conn.execute(_BY_ID, {"id": int(record_id)}).fetchone()
        except SQLAlchemyError as e:
            raise StoreError(type(e).__name__) from e
        return _row_to_record(row) if row is not None else None

    def list_all(self) -> List[TimeWindowRecord]:
        try:
            with self._engine.connect() as conn:
                rows = conn.execute(_ALL).fetchall()
        except SQLAlchemyError as e:
            raise StoreError(type(e).__name__) from e
        return [_row_to_record(r) for r in rows]

    def latest(self) -> Optional[TimeWindowRecord]:
        records = self.list_all()
        return records[0] if records else None

    def update(self, record_id: int, begin: datetime, end: datetime) -> Optional[TimeWindowRecord]:
        """Actualiza begin/end; None si el registro no existe."""
        try:
            with self._engine.begin() as conn:
                result = conn.execute(
                    _UPDATE,
                    {"id": int(record_id), "begin_datetime": begin, "end_datetime": end},
                )
                if result.rowcount == 0:
                    return None
                row = conn.execute(_BY_ID, {"id": int(record_id)}).fetchone()
        except SQLAlchemyError as e:
            logger.exception("[STORE] Time window update failed")
            raise StoreError(type(e).__name__) from e
        return _row_to_record(row)

    def delete(self, record_id: int) -> bool:
        try:
            with self._engine.begin() as conn:
                result = conn.execute(_DELETE, {"id": int(record_id)})
        except SQLAlchemyError as e:
            logger.exception("[STORE] Time window delete failed")
            raise StoreError(type(e).__name__) from e
        return result.rowcount > 0
