"""Dashboard and count routes backed by the read-through cache."""

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query

from constants import COUNTED_MODELS, TIMEFRAMES
from core.container import container
from core.logging import get_logger
from routers.auth import get_cached_database, get_current_user
from services.analysis import AnalysisService
from services.cached_database import CachedDatabase

logger = get_logger(__name__)
router = APIRouter(prefix="/api/insights", tags=["insights"])


def get_analysis_service() -> AnalysisService:
    return container.analysis_service()


@router.get("/dashboard")
async def get_dashboard(
    timeframe: str = Query(default="all"),
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database),
    analysis: AnalysisService = Depends(get_analysis_service)
):
    """Aggregated projects, skills, competencies and analyzed entries."""
    if timeframe not in TIMEFRAMES:
        raise HTTPException(status_code=400, detail=f"Unknown timeframe: {timeframe}")

    data = await db.get_cached_dashboard_data(
        user["id"], timeframe, lambda: analysis.get_dashboard(user["id"], timeframe)
    )
    logger.info("Dashboard served", user_id=user["id"], timeframe=timeframe,
                total_entries=data["summary"]["total_entries"])
    return {"success": True, "data": data}


@router.get("/counts")
async def get_counts(
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Per-user record counts."""
    counts = {}
    for model in sorted(COUNTED_MODELS):
        counts[model] = await db.get_cached_count(model, {"user_id": user["id"]})
    return {"success": True, "counts": counts}
