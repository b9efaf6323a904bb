"""CRUD de registros de ventana temporal."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..auth import require_api_key
from ..schemas import TimeWindowIn, TimeWindowOut
from ..time_windows import TimeWindowRepository
from .deps import get_time_windows

router = APIRouter(prefix="/api/datetime", tags=["datetime"])


@router.post("", response_model=TimeWindowOut, dependencies=[Depends(require_api_key)])
def create_time_window(
    payload: TimeWindowIn,
    repo: TimeWindowRepository = Depends(get_time_windows),
):
    return TimeWindowOut.from_record(repo.create(payload.begin, payload.end))


@router.get("", response_model=List[TimeWindowOut])
def list_time_windows(repo: TimeWindowRepository = Depends(get_time_windows)):
    return [TimeWindowOut.from_record(r) for r in repo.list_all()]


@router.get("/latest", response_model=TimeWindowOut)
def get_latest_time_window(repo: TimeWindowRepository = Depends(get_time_windows)):
    record = repo.latest()
    if record is None:
        raise HTTPException(status_code=404, detail="No time windows recorded")
    return TimeWindowOut.from_record(record)


@router.get("/{record_id}", response_model=TimeWindowOut)
def get_time_window(record_id: int, repo: TimeWindowRepository = Depends(get_time_windows)):
    record = repo.get(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Time window not found")
    return TimeWindowOut.from_record(record)


@router.put("/{record_id}", response_model=TimeWindowOut, dependencies=[Depends(require_api_key)])
def update_time_window(
    record_id: int,
    payload: TimeWindowIn,
    repo: TimeWindowRepository = Depends(get_time_windows),
):
    record = repo.update(record_id, payload.begin, payload.end)
    if record is None:
        raise HTTPException(status_code=404, detail="Time window not found")
    return TimeWindowOut.from_record(record)


@router.delete("/{record_id}", dependencies=[Depends(require_api_key)])
def delete_time_window(record_id: int, repo: TimeWindowRepository = Depends(get_time_windows)):
    if not repo.delete(record_id):
        raise HTTPException(status_code=404, detail="Time window not found")
    return {"deleted": record_id}
