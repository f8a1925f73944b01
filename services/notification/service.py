"""
services/notification/service.py
In-app notification log for back-office staff.

Notifications are created by an explicit send and afterwards only move
from unread to read. There is no delete and no archive transition.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Notification, NotificationScope
from shared.schemas.schemas import (
    DEFAULT_PAGE_LIMIT,
    MAX_PAGE_LIMIT,
    NotificationPage,
    NotificationResponse,
    Pagination,
)
from shared.utils.exceptions import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


def _required(value: Any, name: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValidationError(f"{name} is required")
    return value.strip() if isinstance(value, str) else value


async def send_notification(
    db: AsyncSession,
    pg_id: Optional[uuid.UUID],
    type: Optional[str],
    title: Optional[str],
    message: Optional[str],
    branch_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    role_scope: Union[NotificationScope, str] = NotificationScope.ADMIN,
    data: Optional[dict] = None,
    created_by: Optional[uuid.UUID] = None,
) -> Notification:
    """Create one unread notification. No user_id means broadcast to role_scope."""
    try:
        scope = NotificationScope(role_scope or NotificationScope.ADMIN)
    except ValueError:
        raise ValidationError(f"Invalid role scope '{role_scope}'")

    notification = Notification(
        pg_id=_required(pg_id, "pg_id"),
        type=_required(type, "type"),
        title=_required(title, "title"),
        message=_required(message, "message"),
        branch_id=branch_id,
        user_id=user_id,
        role_scope=scope,
        data=data or {},
        created_by=created_by,
        is_read=False,
    )
    db.add(notification)
    await db.flush()
    logger.info("Notification %s (%s) sent to pg %s", notification.id, notification.type, pg_id)
    return notification


async def list_notifications(
    db: AsyncSession,
    pg_id: uuid.UUID,
    branch_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
    role_scope: Optional[Union[NotificationScope, str]] = None,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
    unread_only: bool = False,
) -> NotificationPage:
    """Newest first. Every filter besides pg_id is optional."""
    if page < 1 or limit < 1:
        raise ValidationError("page and limit must be positive")
    limit = min(limit, MAX_PAGE_LIMIT)

    where = [Notification.pg_id == _required(pg_id, "pg_id")]
    if branch_id:
        where.append(Notification.branch_id == branch_id)
    if user_id:
        where.append(Notification.user_id == user_id)
    if role_scope:
        try:
            where.append(Notification.role_scope == NotificationScope(role_scope))
        except ValueError:
            raise ValidationError(f"Invalid role scope '{role_scope}'")
    if unread_only:
        where.append(Notification.is_read.is_(False))

    total = await db.scalar(select(func.count(Notification.id)).where(*where)) or 0
    result = await db.execute(
        select(Notification)
        .where(*where)
        .order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return NotificationPage(
        items=[NotificationResponse.model_validate(n) for n in result.scalars()],
        pagination=Pagination.build(page, limit, total),
    )


async def mark_read(
    db: AsyncSession,
    notification_id: uuid.UUID,
    user_id: uuid.UUID,
    pg_id: Optional[uuid.UUID] = None,
) -> Notification:
    """
    unread → read. A notification that is already read keeps its
    original read_at.
    """
    query = select(Notification).where(Notification.id == notification_id)
    if pg_id is not None:
        query = query.where(Notification.pg_id == pg_id)
    notification = (await db.execute(query)).scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification not found")

    if not notification.is_read:
        notification.is_read = True
        notification.read_at = datetime.now(timezone.utc)
        await db.flush()
        logger.debug("Notification %s read by %s", notification_id, user_id)
    return notification


async def mark_all_read(
    db: AsyncSession,
    pg_id: uuid.UUID,
    branch_id: Optional[uuid.UUID] = None,
    user_id: Optional[uuid.UUID] = None,
) -> dict:
    """Bulk unread → read. Idempotent: already-read rows are not touched."""
    where = [Notification.pg_id == _required(pg_id, "pg_id"), Notification.is_read.is_(False)]
    if branch_id:
        where.append(Notification.branch_id == branch_id)
    if user_id:
        where.append(Notification.user_id == user_id)

    now = datetime.now(timezone.utc)
    result = await db.execute(
        update(Notification)
        .where(*where)
        .values(is_read=True, read_at=now, updated_at=now)
        .execution_options(synchronize_session="fetch")
    )
    logger.debug("Marked %s notifications read in pg %s", result.rowcount, pg_id)
    return {"success": True}
