"""
services/notification/router.py
In-app notifications for PG administrators and superadmins.

Notifications are scoped to the caller's PG. Sending records a
notification_send activity at the call site; marking one as read is
recorded by the activity interceptor.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.activity.service import record_activity_safely
from services.notification import service as notification_service
from shared.middleware.activity import (
    NOTIFICATION_READ_ACTIVITY,
    ActivityRoute,
    client_ip,
    records,
)
from shared.middleware.auth import ActorContext, require_admin_or_superadmin
from shared.models.models import (
    ActivityCategory,
    ActivityType,
    EntityType,
    NotificationScope,
    UserRole,
)
from shared.schemas.schemas import (
    DEFAULT_PAGE_LIMIT,
    ApiResponse,
    NotificationCreate,
    NotificationResponse,
)
from shared.utils.exceptions import ValidationError

router = APIRouter(prefix="/notifications", tags=["Notifications"], route_class=ActivityRoute)


def _caller_pg(actor: ActorContext) -> UUID:
    if actor.pg_id is None:
        raise ValidationError("PG ID is required")
    return actor.pg_id


def _role_scope(actor: ActorContext) -> NotificationScope:
    if actor.role == UserRole.SUPERADMIN:
        return NotificationScope.SUPERADMIN
    return NotificationScope.ADMIN


# ── REST Endpoints ────────────────────────────────────────────

@router.get("", response_model=ApiResponse)
async def get_notifications(
    branch_id: Optional[UUID] = Query(None),
    unread_only: bool = Query(False),
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1),
    actor: ActorContext = Depends(require_admin_or_superadmin),
    db: AsyncSession = Depends(get_db),
):
    """Notifications of the caller's PG for the caller's role, newest first."""
    result = await notification_service.list_notifications(
        db,
        pg_id=_caller_pg(actor),
        branch_id=branch_id,
        role_scope=_role_scope(actor),
        page=page,
        limit=limit,
        unread_only=unread_only,
    )
    return ApiResponse(
        message="Notifications retrieved successfully",
        data=result.items,
        pagination=result.pagination,
    )


@router.post("", response_model=ApiResponse, status_code=status.HTTP_201_CREATED)
async def send_notification(
    body: NotificationCreate,
    request: Request,
    actor: ActorContext = Depends(require_admin_or_superadmin),
    db: AsyncSession = Depends(get_db),
):
    notification = await notification_service.send_notification(
        db,
        pg_id=_caller_pg(actor),
        branch_id=body.branch_id or actor.branch_id,
        user_id=body.user_id,
        role_scope=body.role_scope,
        type=body.type,
        title=body.title,
        message=body.message,
        data=body.data,
        created_by=actor.user_id,
    )

    await record_activity_safely(db, {
        "type": ActivityType.NOTIFICATION_SEND,
        "title": "Notification Sent",
        "description": f"Sent notification: {notification.title}",
        "category": ActivityCategory.COMMUNICATION,
        "entity_type": EntityType.NOTIFICATION,
        "entity_id": notification.id,
        "entity_name": notification.title[:100],
        "branch_id": notification.branch_id,
        "branch_name": actor.branch_name,
        "user_id": actor.user_id,
        "user_email": actor.email,
        "user_role": actor.role,
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
        "metadata": {"notification_type": notification.type, "role_scope": notification.role_scope},
    })

    return ApiResponse(
        message="Notification sent successfully",
        data=NotificationResponse.model_validate(notification),
    )


@router.put("/mark-all/read", response_model=ApiResponse)
async def mark_all_read(
    branch_id: Optional[UUID] = Query(None),
    actor: ActorContext = Depends(require_admin_or_superadmin),
    db: AsyncSession = Depends(get_db),
):
    await notification_service.mark_all_read(db, pg_id=_caller_pg(actor), branch_id=branch_id)
    return ApiResponse(message="All notifications marked as read")


@router.put("/{notification_id}/read", response_model=ApiResponse)
@records(NOTIFICATION_READ_ACTIVITY)
async def mark_read(
    notification_id: UUID,
    actor: ActorContext = Depends(require_admin_or_superadmin),
    db: AsyncSession = Depends(get_db),
):
    notification = await notification_service.mark_read(
        db, notification_id, actor.user_id, pg_id=_caller_pg(actor)
    )
    return ApiResponse(
        message="Notification marked as read",
        data=NotificationResponse.model_validate(notification),
    )
