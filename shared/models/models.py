"""
shared/models/models.py
SQLAlchemy ORM models for the PG back-office activity audit trail
and notification log. UUID primary keys throughout.

The users / pgs / branches tables are owned by the wider back office;
this service only reads them (actor loading, default-branch resolution,
display names).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from config.database import Base
from shared.utils.exceptions import PersistenceError


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    SUPERADMIN = "superadmin"
    ADMIN = "admin"
    SUPPORT = "support"
    USER = "user"


class ActivityType(str, PyEnum):
    USER_LOGIN = "user_login"
    USER_LOGOUT = "user_logout"
    USER_REGISTER = "user_register"
    USER_UPDATE = "user_update"
    USER_DELETE = "user_delete"
    PG_CREATE = "pg_create"
    PG_UPDATE = "pg_update"
    PG_DELETE = "pg_delete"
    PG_ACTIVATE = "pg_activate"
    PG_DEACTIVATE = "pg_deactivate"
    RESIDENT_CREATE = "resident_create"
    RESIDENT_UPDATE = "resident_update"
    RESIDENT_DELETE = "resident_delete"
    RESIDENT_MOVE_IN = "resident_move_in"
    RESIDENT_MOVE_OUT = "resident_move_out"
    PAYMENT_CREATE = "payment_create"
    PAYMENT_UPDATE = "payment_update"
    PAYMENT_APPROVE = "payment_approve"
    PAYMENT_REJECT = "payment_reject"
    TICKET_CREATE = "ticket_create"
    TICKET_UPDATE = "ticket_update"
    TICKET_ASSIGN = "ticket_assign"
    TICKET_RESOLVE = "ticket_resolve"
    TICKET_CLOSE = "ticket_close"
    ROOM_CREATE = "room_create"
    ROOM_UPDATE = "room_update"
    ROOM_DELETE = "room_delete"
    ROOM_SWITCH = "room_switch"
    FLOOR_CREATE = "floor_create"
    FLOOR_UPDATE = "floor_update"
    FLOOR_DELETE = "floor_delete"
    BRANCH_CREATE = "branch_create"
    BRANCH_UPDATE = "branch_update"
    BRANCH_DELETE = "branch_delete"
    BRANCH_SET_DEFAULT = "branch_set_default"
    QR_GENERATE = "qr_generate"
    QR_DEACTIVATE = "qr_deactivate"
    REPORT_GENERATE = "report_generate"
    REPORT_EXPORT = "report_export"
    NOTIFICATION_SEND = "notification_send"
    NOTIFICATION_READ = "notification_read"
    SYSTEM_BACKUP = "system_backup"
    SYSTEM_MAINTENANCE = "system_maintenance"
    SYSTEM_ERROR = "system_error"
    SUPPORT_STAFF_CREATE = "support_staff_create"
    SUPPORT_STAFF_UPDATE = "support_staff_update"
    SUPPORT_STAFF_DELETE = "support_staff_delete"
    ONBOARDING_COMPLETE = "onboarding_complete"
    OFFBOARDING_COMPLETE = "offboarding_complete"
    DOCUMENT_UPLOAD = "document_upload"
    DOCUMENT_DOWNLOAD = "document_download"
    DOCUMENT_DELETE = "document_delete"
    # Umbrella kinds recorded by the preconfigured route interceptors
    RESIDENT_MANAGEMENT = "resident_management"
    PAYMENT_MANAGEMENT = "payment_management"
    ROOM_MANAGEMENT = "room_management"
    USER_MANAGEMENT = "user_management"
    SYSTEM_MANAGEMENT = "system_management"
    PG_MANAGEMENT = "pg_management"
    TICKET_MANAGEMENT = "ticket_management"
    SUPPORT_USER_MANAGEMENT = "support_user_management"


class EntityType(str, PyEnum):
    USER = "user"
    PG = "pg"
    RESIDENT = "resident"
    PAYMENT = "payment"
    TICKET = "ticket"
    ROOM = "room"
    FLOOR = "floor"
    BRANCH = "branch"
    QR = "qr"
    REPORT = "report"
    NOTIFICATION = "notification"
    DOCUMENT = "document"
    SYSTEM = "system"


class ActivityPriority(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class ActivityCategory(str, PyEnum):
    AUTHENTICATION = "authentication"
    MANAGEMENT = "management"
    FINANCIAL = "financial"
    SUPPORT = "support"
    SYSTEM = "system"
    COMMUNICATION = "communication"


class ActivityStatus(str, PyEnum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


class NotificationScope(str, PyEnum):
    ADMIN = "admin"
    SUPERADMIN = "superadmin"
    SUPPORT = "support"
    ALL = "all"


def _enum_column(enum_cls: type[PyEnum]) -> Enum:
    """Store enum values (not names) as plain strings on every backend."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=40,
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
        nullable=False,
    )


# ── Reference tables (owned by the wider back office) ────────

class Pg(TimestampMixin, Base):
    """A paying-guest property. Owns one or more branches."""
    __tablename__ = "pgs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    def __repr__(self) -> str:
        return f"<Pg {self.name}>"


class Branch(TimestampMixin, Base):
    """A physical branch of a PG. At most one per PG is flagged default."""
    __tablename__ = "branches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pg_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("pgs.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        Index("ix_branches_pg_default", "pg_id", "is_default", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<Branch {self.name}{' (default)' if self.is_default else ''}>"


class User(TimestampMixin, Base):
    """Back-office account. Admins are attached to a PG and usually a branch."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    role: Mapped[UserRole] = mapped_column(
        _enum_column(UserRole), nullable=False, default=UserRole.USER
    )
    pg_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("pgs.id", ondelete="SET NULL"), nullable=True
    )
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (Index("ix_users_role", "role"),)

    @property
    def display_name(self) -> str:
        full = f"{self.first_name} {self.last_name}".strip()
        return full or self.email

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


# ── Activity audit trail ─────────────────────────────────────

class Activity(Base):
    """
    Immutable audit entry: who did what, to what, when, with what outcome.
    Append-only. Rows are never updated; removal happens only through the
    age-based purge, which runs as a bulk statement.
    """
    __tablename__ = "activities"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[ActivityType] = mapped_column(_enum_column(ActivityType), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False)

    # Actor
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_role: Mapped[UserRole] = mapped_column(_enum_column(UserRole), nullable=False)

    # Subject (polymorphic; entity_id is typed by entity_type)
    entity_type: Mapped[Optional[EntityType]] = mapped_column(
        _enum_column(EntityType), nullable=True
    )
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Scope
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    branch_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    priority: Mapped[ActivityPriority] = mapped_column(
        _enum_column(ActivityPriority), nullable=False, default=ActivityPriority.NORMAL
    )
    category: Mapped[ActivityCategory] = mapped_column(
        _enum_column(ActivityCategory), nullable=False
    )

    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)

    ip_address: Mapped[Optional[str]] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    status: Mapped[ActivityStatus] = mapped_column(
        _enum_column(ActivityStatus), nullable=False, default=ActivityStatus.SUCCESS
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_activities_user_ts", "user_id", "timestamp"),
        Index("ix_activities_type_ts", "type", "timestamp"),
        Index("ix_activities_branch_ts", "branch_id", "timestamp"),
        Index("ix_activities_entity", "entity_type", "entity_id"),
        Index("ix_activities_category_ts", "category", "timestamp"),
        Index("ix_activities_priority_ts", "priority", "timestamp"),
        Index("ix_activities_ts", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<Activity {self.type} by {self.user_email} ({self.status})>"


@event.listens_for(Activity, "before_update")
def _refuse_activity_update(mapper, connection, target):
    raise PersistenceError("Activity records are append-only and cannot be modified")


@event.listens_for(Activity, "before_delete")
def _refuse_activity_delete(mapper, connection, target):
    raise PersistenceError("Activity records cannot be deleted individually")


# ── Notifications ─────────────────────────────────────────────

class Notification(TimestampMixin, Base):
    """User-facing alert. Mutable only through the unread → read transition."""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    pg_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("pgs.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    # No user_id = broadcast to everyone in role_scope
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    role_scope: Mapped[NotificationScope] = mapped_column(
        _enum_column(NotificationScope), nullable=False, default=NotificationScope.ADMIN
    )
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (
        Index("ix_notifications_pg_created", "pg_id", "created_at"),
        Index("ix_notifications_branch_created", "branch_id", "created_at"),
        Index("ix_notifications_user_read_created", "user_id", "is_read", "created_at"),
    )
