"""
services/activity/router.py
Activity audit trail endpoints: role-scoped list / stats / per-user /
per-branch / timeline views, CSV export, manual recording and retention.

Every read goes through ActivityQueryEngine, so the caller's role decides
which slice of the log is visible. The resolved tier is echoed in the
X-Activity-Scope response header.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.activity import service as activity_service
from services.activity.scoping import ActivityQueryEngine
from shared.middleware.activity import client_ip
from shared.middleware.auth import ActorContext, get_current_actor, require_superadmin
from shared.models.models import UserRole
from shared.schemas.schemas import (
    ActivityCleanupRequest,
    ActivityCleanupResponse,
    ActivityCreate,
    ActivityFields,
    ActivityPage,
    ActivityResponse,
    ApiResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/activities", tags=["Activities"])

SCOPE_HEADER = "X-Activity-Scope"


def activity_filters(
    page: int = Query(1),
    limit: int = Query(10),
    filter_user_id: Optional[str] = Query(None, alias="user_id"),
    filter_branch_id: Optional[str] = Query(None, alias="branch_id"),
    type: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    priority: Optional[str] = Query(None),
    user_role: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
    q: Optional[str] = Query(None),
    sort: str = Query("-timestamp"),
) -> dict:
    """
    Raw query parameters. Validation happens in the recording service so
    a bad value surfaces as a 400 envelope with the offending field.
    """
    raw = {
        "page": page, "limit": limit, "user_id": filter_user_id, "branch_id": filter_branch_id,
        "type": type, "category": category, "priority": priority, "user_role": user_role,
        "status": status, "start_date": start_date, "end_date": end_date, "q": q, "sort": sort,
    }
    return {k: v for k, v in raw.items() if v is not None}


def _page_response(page: ActivityPage, response: Response, message: str) -> ApiResponse:
    if page.scope:
        response.headers[SCOPE_HEADER] = page.scope
    return ApiResponse(message=message, data=page.items, pagination=page.pagination)


# ── Role-scoped reads ─────────────────────────────────────────

@router.get("", response_model=ApiResponse)
async def list_activities(
    response: Response,
    filters: dict = Depends(activity_filters),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    page = await ActivityQueryEngine(db, actor).list(filters)
    return _page_response(page, response, "Activities retrieved successfully")


@router.get("/stats", response_model=ApiResponse)
async def activity_stats(
    response: Response,
    time_range: str = Query("24h"),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Counts per (type, category, status). Cached per scope for a short TTL."""
    engine = ActivityQueryEngine(db, actor)
    scope = await engine.scope()
    response.headers[SCOPE_HEADER] = scope.tier.value

    cache = RedisCache(redis)
    cache_key = f"activity:stats:{scope.cache_key}:{time_range}"
    cached = await cache.get(cache_key)
    if cached is not None:
        return ApiResponse(message="Activity statistics retrieved successfully", data=cached)

    stats = await engine.stats(time_range)
    data = [item.model_dump(mode="json") for item in stats]
    await cache.set(cache_key, data, ttl=settings.ACTIVITY_STATS_CACHE_TTL)
    return ApiResponse(message="Activity statistics retrieved successfully", data=data)


@router.get("/user/{user_id}", response_model=ApiResponse)
async def user_activities(
    user_id: UUID,
    response: Response,
    filters: dict = Depends(activity_filters),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    page = await ActivityQueryEngine(db, actor).by_user(user_id, filters)
    return _page_response(page, response, "User activities retrieved successfully")


@router.get("/branch/{branch_id}", response_model=ApiResponse)
async def branch_activities(
    branch_id: UUID,
    response: Response,
    filters: dict = Depends(activity_filters),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    page = await ActivityQueryEngine(db, actor).by_branch(branch_id, filters)
    return _page_response(page, response, "Branch activities retrieved successfully")


@router.get("/timeline/{entity_type}/{entity_id}", response_model=ApiResponse)
async def entity_timeline(
    entity_type: str,
    entity_id: str,
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    items = await ActivityQueryEngine(db, actor).timeline(entity_type, entity_id)
    return ApiResponse(message="Entity timeline retrieved successfully", data=items)


@router.get("/export/csv")
async def export_activities(
    filters: dict = Depends(activity_filters),
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Role-scoped CSV of the current filter set, capped at ACTIVITY_EXPORT_MAX_ROWS."""
    items = await ActivityQueryEngine(db, actor).export(filters)
    content = activity_service.export_activities_csv(items)
    filename = f"activities-{datetime.now(timezone.utc):%Y%m%d-%H%M%S}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


# ── Writes ────────────────────────────────────────────────────

@router.post("/record", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def record_activity(
    body: ActivityFields,
    request: Request,
    actor: ActorContext = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Record one activity attributed to the caller. Actor fields in the body are ignored."""
    payload = ActivityCreate(
        **body.model_dump(exclude={"branch_id", "branch_name"}),
        branch_id=body.branch_id or actor.branch_id,
        branch_name=body.branch_name or actor.branch_name,
        user_id=actor.user_id,
        user_email=actor.email,
        user_role=actor.role,
        ip_address=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
    )
    activity = await activity_service.record_activity(db, payload)
    return ApiResponse(
        message="Activity recorded successfully",
        data=ActivityResponse.model_validate(activity),
    )


@router.post("/cleanup", response_model=ApiResponse)
async def cleanup_activities(
    body: Optional[ActivityCleanupRequest] = None,
    actor: ActorContext = Depends(require_superadmin),
    db: AsyncSession = Depends(get_db),
):
    days_to_keep = body.days_to_keep if body and body.days_to_keep is not None else settings.ACTIVITY_RETENTION_DAYS
    result = await activity_service.purge_activities(db, days_to_keep)
    logger.info(
        "Activity cleanup by %s (%s): %s rows older than %s days",
        actor.email, UserRole(actor.role).value, result["deleted_count"], days_to_keep,
    )
    return ApiResponse(
        message=f"Cleaned up {result['deleted_count']} old activities",
        data=ActivityCleanupResponse(**result),
    )
