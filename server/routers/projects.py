"""Project maintenance routes.

The list is served from the per-user projects cache slot shared with entry
analysis; every write clears the projects and entries families so lists and
dashboards pick up the change.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError

from constants import (
    PROJECT_CREATE_INVALIDATES,
    PROJECT_DELETE_INVALIDATES,
    PROJECT_NAME_MAX_LENGTH,
    PROJECT_STATUSES,
    PROJECT_UPDATE_INVALIDATES,
)
from core.exceptions import OperationFailed, RecordNotFoundError
from core.logging import get_logger
from routers.auth import get_cached_database, get_current_user
from services.cached_database import CachedDatabase

logger = get_logger(__name__)
router = APIRouter(prefix="/api/projects", tags=["projects"])


class ProjectCreateRequest(BaseModel):
    name: str
    status: str = "active"


class ProjectNameRequest(BaseModel):
    name: str


class ProjectStatusRequest(BaseModel):
    status: str


def _project_view(project: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": project["id"],
        "name": project["name"],
        "status": project["status"],
        "entry_count": project["entry_count"],
        "created_at": project["created_at"],
        "updated_at": project["updated_at"],
    }


def _validated_name(name: str) -> str:
    trimmed = name.strip()
    if not trimmed:
        raise HTTPException(status_code=400, detail="Project name is required")
    if len(trimmed) > PROJECT_NAME_MAX_LENGTH:
        raise HTTPException(status_code=400,
                            detail=f"Project name must be {PROJECT_NAME_MAX_LENGTH} characters or less")
    return trimmed


def _validate_status(status: str) -> None:
    if status not in PROJECT_STATUSES:
        raise HTTPException(status_code=400,
                            detail=f"Invalid status. Must be one of: {', '.join(sorted(PROJECT_STATUSES))}")


async def _owned_project(db: CachedDatabase, user_id: str, project_id: str) -> Dict[str, Any]:
    project = await db.find_unique("project", {"id": project_id, "user_id": user_id})
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


async def _ensure_name_free(db: CachedDatabase, user_id: str, name: str,
                            exclude_id: Optional[str] = None) -> None:
    where: Dict[str, Any] = {"user_id": user_id, "name": name}
    if exclude_id:
        where["id"] = {"not": exclude_id}
    if await db.find_many("project", where=where, limit=1):
        raise HTTPException(status_code=409, detail="A project with this name already exists")


@router.get("")
async def list_projects(
    search: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Projects, active first then most recently updated; filtered in memory over the cached list."""
    projects: List[Dict[str, Any]] = await db.get_cached_user_projects(user["id"])

    if search:
        needle = search.lower()
        projects = [p for p in projects if needle in p["name"].lower()]
    if status and status != "all":
        projects = [p for p in projects if p["status"] == status]

    projects = sorted(projects, key=lambda p: p.get("updated_at") or "", reverse=True)
    projects.sort(key=lambda p: p["status"])
    return {"success": True, "data": [_project_view(p) for p in projects]}


@router.post("", status_code=201)
async def create_project(
    request: ProjectCreateRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Create a project with a name unique for the user."""
    name = _validated_name(request.name)
    _validate_status(request.status)
    await _ensure_name_free(db, user["id"], name)

    try:
        project = await db.create_and_invalidate_cache(
            "project", {"user_id": user["id"], "name": name, "status": request.status},
            PROJECT_CREATE_INVALIDATES,
        )
    except OperationFailed as e:
        if isinstance(e.cause, IntegrityError):
            raise HTTPException(status_code=409, detail="A project with this name already exists")
        raise

    logger.info("Project created", user_id=user["id"], project_id=project["id"])
    return {"success": True, "data": _project_view(project)}


@router.put("/{project_id}/name")
async def rename_project(
    project_id: str,
    request: ProjectNameRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    name = _validated_name(request.name)
    await _owned_project(db, user["id"], project_id)
    await _ensure_name_free(db, user["id"], name, exclude_id=project_id)

    try:
        project = await db.update_and_invalidate_cache(
            "project", {"id": project_id, "user_id": user["id"]}, {"name": name},
            PROJECT_UPDATE_INVALIDATES,
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")
    except OperationFailed as e:
        if isinstance(e.cause, IntegrityError):
            raise HTTPException(status_code=409, detail="A project with this name already exists")
        raise

    return {"success": True, "data": _project_view(project)}


@router.put("/{project_id}/status")
async def update_project_status(
    project_id: str,
    request: ProjectStatusRequest,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    _validate_status(request.status)

    try:
        project = await db.update_and_invalidate_cache(
            "project", {"id": project_id, "user_id": user["id"]}, {"status": request.status},
            PROJECT_UPDATE_INVALIDATES,
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")

    return {"success": True, "data": _project_view(project)}


@router.delete("/{project_id}")
async def delete_project(
    project_id: str,
    user: Dict[str, Any] = Depends(get_current_user),
    db: CachedDatabase = Depends(get_cached_database)
):
    """Delete a project no entry refers to; used projects must be archived instead."""
    project = await _owned_project(db, user["id"], project_id)
    if project["entry_count"] > 0:
        raise HTTPException(status_code=400,
                            detail="Cannot delete project with associated entries. Archive it instead.")

    try:
        await db.delete_and_invalidate_cache(
            "project", {"id": project_id, "user_id": user["id"]}, PROJECT_DELETE_INVALIDATES
        )
    except RecordNotFoundError:
        raise HTTPException(status_code=404, detail="Project not found")

    logger.info("Project deleted", user_id=user["id"], project_id=project_id)
    return {"success": True, "deleted": project_id}
