"""Journal entry routes.

Reads go through the per-user entries cache; writes invalidate the cache
families listed in ``constants`` and queue an analysis job.
"""

from datetime import date as date_type
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from constants import ENTRY_CREATE_INVALIDATES, ENTRY_DELETE_INVALIDATES, ENTRY_UPDATE_INVALIDATES
from core.container import container
from core.exceptions import OperationFailed, RecordNotFoundError
from core.logging import get_logger
from routers.auth import get_cached_database, get_current_user
from services.analysis import MIN_ENTRY_LENGTH
from services.cached_database import CachedDatabase
from services.job_queue import AnalysisJobQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/api/entries", tags=["entries"])

RECENT_ENTRIES_LIMIT = 30


class EntryCreateRequest(BaseModel):
    date: date_type
    raw_text: str = Field(min_length=1, max_length=50000)


class EntryUpdateRequest(BaseModel):
    raw_text: str = Field(min_length=1, max_length=50000)


def get_job_queue() -> AnalysisJobQueue:
    return container.job_queue()


def _word_count(text: str) -> int:
    return len(text.split())


async def _queue_analysis(job_queue: AnalysisJobQueue, entry: Dict[str, Any], priority: str) -> Optional[str]:
    """Queue analysis for entries long enough to analyze; queue failures never fail the write."""
    if len(entry["raw_text"].strip()) < MIN_ENTRY_LENGTH:
        return None
    try:
        return await job_queue.add_analysis_job(entry["id"], priority=priority)
    except Exception as e:
        logger.error("Failed to queue analysis", entry_id=entry["id"], error=str(e))
        return None


@router.get("")
async def list_entries(
    date: Optional[date_type] = Query(default=None),
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Entries for one date, or the most recent entries."""
    day = date.isoformat() if date else None

    async def load():
        where = {"user_id": user["id"]}
        if day:
            where["date"] = day
        return await db.find_many("entry", where=where, order_by="-date", limit=RECENT_ENTRIES_LIMIT)

    entries = await db.get_cached_user_entries(user["id"], day, load)
    return {"success": True, "entries": entries}


@router.get("/{day}")
async def get_entry(
    day: date_type,
    refresh: bool = Query(default=False),
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Entry for one date; ``refresh`` bypasses the cache."""
    where = {"user_id": user["id"], "date": day.isoformat()}

    async def load():
        return await db.find_many("entry", where=where)

    entries = await load() if refresh else await db.get_cached_user_entries(user["id"], day.isoformat(), load)
    if not entries:
        raise HTTPException(status_code=404, detail="Entry not found")
    return {"success": True, "entry": entries[0]}


@router.post("", status_code=201)
async def create_entry(
    request: EntryCreateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Create the entry for a date and queue its analysis."""
    try:
        entry = await db.create_and_invalidate_cache("entry", {
            "user_id": user["id"],
            "date": request.date.isoformat(),
            "raw_text": request.raw_text,
            "word_count": _word_count(request.raw_text),
        }, ENTRY_CREATE_INVALIDATES)
    except OperationFailed as e:
        if isinstance(e.cause, IntegrityError):
            raise HTTPException(status_code=409, detail="An entry already exists for this date")
        raise

    job_id = await _queue_analysis(job_queue, entry, priority="normal")
    return {"success": True, "entry": entry, "job_id": job_id}


@router.put("/{day}")
async def update_entry(
    day: date_type,
    request: EntryUpdateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Replace an entry's text and re-queue analysis ahead of older work."""
    try:
        entry = await db.update_and_invalidate_cache(
            "entry",
            {"user_id": user["id"], "date": day.isoformat()},
            {"raw_text": request.raw_text, "word_count": _word_count(request.raw_text)},
            ENTRY_UPDATE_INVALIDATES,
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Entry not found")

    job_id = await _queue_analysis(job_queue, entry, priority="high")
    return {"success": True, "entry": entry, "job_id": job_id}


@router.delete("/{day}")
async def delete_entry(
    day: date_type,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Delete the entry for a date."""
    try:
        entry = await db.delete_and_invalidate_cache(
            "entry", {"user_id": user["id"], "date": day.isoformat()}, ENTRY_DELETE_INVALIDATES
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Entry not found")
    return {"success": True, "deleted": entry["id"]}
