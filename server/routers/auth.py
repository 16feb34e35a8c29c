"""Request identity.

OAuth sessions are handled upstream; this service trusts the ``X-User-Id``
header and only checks that the user exists.
"""

from typing import Any, Dict

from fastapi import APIRouter, Depends, Header, HTTPException

from core.container import container
from core.logging import get_logger
from services.cached_database import CachedDatabase

logger = get_logger(__name__)
router = APIRouter(prefix="/api/auth", tags=["auth"])


def get_cached_database() -> CachedDatabase:
    return container.cached_database()


async def get_current_user(
    x_user_id: str = Header(default=""),
    db: CachedDatabase = Depends(get_cached_database)
) -> Dict[str, Any]:
    """Resolve the calling user or reject the request."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")

    user = await db.find_unique("user", {"id": x_user_id})
    if not user:
        logger.warning("Unknown user id in request", user_id=x_user_id)
        raise HTTPException(status_code=401, detail="Unknown user")
    return user


@router.get("/me")
async def get_me(user: Dict[str, Any] = Depends(get_current_user)):
    """Get current user profile."""
    return {
        "id": user["id"],
        "email": user["email"],
        "name": user["name"],
        "job_title": user.get("job_title"),
        "industry": user.get("industry"),
    }
