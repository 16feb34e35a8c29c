"""Analysis job routes: enqueue, poll and administer the job queue."""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from constants import TIMEFRAMES
from core.logging import get_logger
from routers.auth import get_cached_database, get_current_user
from routers.entries import get_job_queue
from routers.insights import get_analysis_service
from services.analysis import AnalysisService
from services.cached_database import CachedDatabase
from services.job_queue import AnalysisJobQueue

logger = get_logger(__name__)
router = APIRouter(prefix="/api/ai", tags=["ai"])


class AnalyzeRequest(BaseModel):
    sync: bool = False
    priority: str = Field(default="normal", pattern="^(high|normal|low)$")


class BatchAnalyzeRequest(BaseModel):
    entry_ids: List[str] = Field(min_length=1, max_length=100)
    batch_size: Optional[int] = Field(default=None, ge=1, le=20)


@router.post("/analyze/batch")
async def analyze_batch(
    request: BatchAnalyzeRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Queue analysis of several entries owned by the caller."""
    entry_ids = list(dict.fromkeys(request.entry_ids))
    owned = await db.get_cached_count("entry", {"user_id": user["id"], "id": {"in": entry_ids}})
    if owned != len(entry_ids):
        raise HTTPException(status_code=404, detail="One or more entries not found")

    job_id = await job_queue.add_batch_analysis_job(entry_ids, batch_size=request.batch_size)
    return {"success": True, "job_id": job_id, "total": len(entry_ids)}


@router.post("/analyze/{entry_id}")
async def analyze_entry(
    entry_id: str,
    request: AnalyzeRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database),
    analysis: AnalysisService = Depends(get_analysis_service),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Analyze one entry, synchronously or through the queue."""
    entry = await db.find_unique("entry", {"id": entry_id, "user_id": user["id"]})
    if not entry:
        raise HTTPException(status_code=404, detail="Entry not found")

    if request.sync:
        result = await analysis.analyze_entry(entry_id, force_refresh=True)
        return result.to_dict()

    job_id = await job_queue.add_analysis_job(entry_id, priority=request.priority)
    return {"success": True, "job_id": job_id}


@router.get("/jobs/{job_id}")
async def get_job_status(
    job_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Job status from the cache mirror."""
    status = await job_queue.get_job_status(job_id)
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "job": status}


@router.get("/queue/stats")
async def get_queue_stats(
    user: Dict[str, Any] = Depends(get_current_user),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    return {"success": True, "stats": job_queue.get_queue_stats()}


@router.post("/queue/clear")
async def clear_queue(
    user: Dict[str, Any] = Depends(get_current_user),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Drop finished jobs from the in-memory queue."""
    return {"success": True, "cleared": job_queue.clear_completed()}


@router.post("/queue/emergency-stop")
async def emergency_stop(
    user: Dict[str, Any] = Depends(get_current_user),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    """Stop processing and discard every queued job."""
    cleared = job_queue.emergency_stop()
    logger.warning("Emergency stop requested", user_id=user["id"], cleared=cleared)
    return {"success": True, "cleared": cleared}


@router.get("/insights")
async def get_insights(
    timeframe: str = Query(default="month"),
    user: Dict[str, Any] = Depends(get_current_user),
    analysis: AnalysisService = Depends(get_analysis_service)
):
    """LLM insights across analyzed entries (memoized per timeframe)."""
    if timeframe not in TIMEFRAMES:
        raise HTTPException(status_code=400, detail=f"Unknown timeframe: {timeframe}")
    return await analysis.generate_insights(user["id"], timeframe)


@router.get("/health")
async def analysis_health(
    analysis: AnalysisService = Depends(get_analysis_service),
    job_queue: AnalysisJobQueue = Depends(get_job_queue)
):
    health = await analysis.health_check()
    return {**health, "queue": job_queue.get_queue_stats()}
