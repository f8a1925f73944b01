"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the activity and notification APIs.
"""

import math
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
)

from shared.models.models import (
    ActivityCategory,
    ActivityPriority,
    ActivityStatus,
    ActivityType,
    EntityType,
    NotificationScope,
    UserRole,
)

DEFAULT_PAGE_LIMIT = 10
MAX_PAGE_LIMIT = 100


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


class Pagination(BaseSchema):
    page: int
    limit: int
    total: int
    pages: int

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        return cls(page=page, limit=limit, total=total, pages=math.ceil(total / limit))


class ApiResponse(BaseSchema):
    """Uniform envelope returned by every endpoint."""
    success: bool = True
    message: str
    data: Optional[Any] = None
    pagination: Optional[Pagination] = None


# ── Activity ──────────────────────────────────────────────────

class ActivityFields(BaseSchema):
    """Caller-suppliable part of an activity (everything but the actor)."""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True, extra="ignore")

    type: ActivityType
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=500)

    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = Field(None, max_length=64)
    entity_name: Optional[str] = Field(None, max_length=100)

    branch_id: Optional[uuid.UUID] = None
    branch_name: Optional[str] = Field(None, max_length=255)

    priority: ActivityPriority = ActivityPriority.NORMAL
    category: ActivityCategory

    metadata: Dict[str, Any] = Field(default_factory=dict)

    status: ActivityStatus = ActivityStatus.SUCCESS
    error_message: Optional[str] = None

    @field_validator("entity_id", mode="before")
    @classmethod
    def stringify_entity_id(cls, v):
        return str(v) if v is not None else None


class ActivityCreate(ActivityFields):
    """
    Full input to the recording service. Unknown keys (including any
    caller-supplied timestamp) are dropped; the timestamp is server-assigned.
    """
    user_id: uuid.UUID
    user_email: str = Field(..., min_length=1, max_length=255)
    user_role: UserRole

    ip_address: Optional[str] = Field(None, max_length=45)
    user_agent: Optional[str] = None

    @field_validator("user_agent")
    @classmethod
    def truncate_user_agent(cls, v: Optional[str]) -> Optional[str]:
        return v[:500] if v else None


class ActivityFilters(BaseSchema):
    page: int = Field(1, ge=1)
    limit: int = Field(DEFAULT_PAGE_LIMIT, ge=1)

    user_id: Optional[uuid.UUID] = None
    branch_id: Optional[uuid.UUID] = None
    type: Optional[ActivityType] = None
    category: Optional[ActivityCategory] = None
    priority: Optional[ActivityPriority] = None
    user_role: Optional[UserRole] = None
    status: Optional[ActivityStatus] = None

    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    q: Optional[str] = None
    sort: str = "-timestamp"

    @field_validator("limit")
    @classmethod
    def cap_limit(cls, v: int) -> int:
        return min(v, MAX_PAGE_LIMIT)


class ActivityResponse(BaseSchema):
    id: uuid.UUID
    type: ActivityType
    title: str
    description: str
    user_id: uuid.UUID
    user_email: str
    user_role: UserRole
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    branch_id: Optional[uuid.UUID] = None
    branch_name: Optional[str] = None
    priority: ActivityPriority
    category: ActivityCategory
    metadata: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("meta", "metadata")
    )
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    status: ActivityStatus
    error_message: Optional[str] = None
    timestamp: datetime
    # Resolved for presentation by the per-user / per-branch views
    branch_display_name: Optional[str] = None
    user_display_name: Optional[str] = None


class ActivityPage(BaseSchema):
    items: List[ActivityResponse]
    pagination: Pagination
    scope: Optional[str] = None


class ActivityStatsItem(BaseSchema):
    type: ActivityType
    category: ActivityCategory
    status: ActivityStatus
    count: int
    last_activity: Optional[datetime] = None


class ActivityCleanupRequest(BaseSchema):
    days_to_keep: Optional[int] = Field(None, ge=1)


class ActivityCleanupResponse(BaseSchema):
    deleted_count: int
    cutoff_date: datetime


# ── Notification ──────────────────────────────────────────────

class NotificationCreate(BaseSchema):
    model_config = ConfigDict(
        from_attributes=True, use_enum_values=True, str_strip_whitespace=True
    )

    branch_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    role_scope: NotificationScope = NotificationScope.ADMIN
    type: str = Field(..., min_length=1, max_length=100)
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1)
    data: Optional[Dict[str, Any]] = None


class NotificationResponse(BaseSchema):
    id: uuid.UUID
    pg_id: uuid.UUID
    branch_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    role_scope: NotificationScope
    type: str
    title: str
    message: str
    data: Optional[Dict[str, Any]] = None
    is_read: bool
    read_at: Optional[datetime] = None
    is_archived: bool
    created_by: Optional[uuid.UUID] = None
    created_at: datetime


class NotificationPage(BaseSchema):
    items: List[NotificationResponse]
    pagination: Pagination
