"""
shared/middleware/activity.py
Response interception for the activity audit trail.

A route handler is wrapped so that, once it has produced its response
(or raised), an activity is derived from the request and handed to the
ActivityDispatcher before the response goes back to the client. The
handler's own response or exception is passed on untouched; audit
failures are logged and dropped.

    router = APIRouter(route_class=ActivityRoute)

    @router.put("/{notification_id}/read")
    @records(NOTIFICATION_READ_ACTIVITY)
    async def mark_read(...): ...
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from typing import Any, Awaitable, Callable, Literal, Optional

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.routing import APIRoute
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config.settings import settings
from shared.models.models import (
    ActivityCategory,
    ActivityPriority,
    ActivityStatus,
    ActivityType,
    EntityType,
)
from services.activity import service as activity_service
from shared.utils.exceptions import ServiceError

logger = logging.getLogger(__name__)

RequestHandler = Callable[[Request], Awaitable[Response]]


@dataclass(frozen=True)
class ActivityTemplate:
    """Static part of an intercepted activity, bound at route definition time."""
    type: ActivityType
    title: str
    description: str
    category: ActivityCategory
    priority: ActivityPriority = ActivityPriority.NORMAL
    entity_type: Optional[EntityType] = None
    # Path parameter carrying the subject id, e.g. "notification_id"
    entity_id_param: Optional[str] = None
    metadata: dict = field(default_factory=dict)


# ── Dispatcher ────────────────────────────────────────────────

class ActivityDispatcher:
    """
    Hands activity payloads to the recording service on a session of
    their own, so an audit write never shares a transaction with the
    business operation it describes.

    mode="background": schedule and return at once. At most
        `max_pending` writes are in flight; beyond that, writes are dropped.
    mode="inline": the caller awaits the write (strict ordering between
        audit durability and response delivery).

    Either way each write is bounded by `timeout` seconds and never raises.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        mode: Literal["background", "inline"] = "background",
        timeout: float = 2.0,
        max_pending: int = 100,
    ):
        self.session_factory = session_factory
        self.mode = mode
        self.timeout = timeout
        self.max_pending = max_pending
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, session_factory: async_sessionmaker[AsyncSession]) -> "ActivityDispatcher":
        return cls(
            session_factory,
            mode=settings.ACTIVITY_RECORD_MODE,
            timeout=settings.ACTIVITY_RECORD_TIMEOUT_SECONDS,
            max_pending=settings.ACTIVITY_MAX_PENDING_WRITES,
        )

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def dispatch(self, payload: dict) -> None:
        if self.mode == "inline":
            await self._write(payload)
            return

        if len(self._pending) >= self.max_pending:
            logger.warning(
                "Activity write dropped: %s writes already pending (type=%s)",
                len(self._pending), payload.get("type"),
            )
            return
        task = asyncio.create_task(self._write(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _write(self, payload: dict) -> None:
        try:
            await asyncio.wait_for(self._persist(payload), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Activity write timed out after %.1fs (type=%s)", self.timeout, payload.get("type"))
        except Exception as exc:
            logger.warning("Activity write failed (type=%s): %s", payload.get("type"), exc)

    async def _persist(self, payload: dict) -> None:
        async with self.session_factory() as session:
            try:
                await activity_service.record_activity(session, payload)
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def drain(self) -> None:
        """Wait for every in-flight write. Used on shutdown and in tests."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


# ── Request → activity payload ───────────────────────────────

async def _request_body(request: Request) -> dict:
    if "application/json" not in request.headers.get("content-type", ""):
        return {}
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, RuntimeError):
        return {}
    return body if isinstance(body, dict) else {}


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


async def build_activity_payload(
    request: Request,
    template: ActivityTemplate,
    status_code: int,
    error_message: Optional[str] = None,
) -> Optional[dict]:
    """
    Merge the template with what the request tells us. Returns None when
    there is no authenticated actor to attribute the activity to.
    """
    actor = getattr(request.state, "actor", None)
    if actor is None:
        return None

    body = await _request_body(request)
    # Branch: request body, then path parameters, then the session's branch
    branch_id = body.get("branch_id") or request.path_params.get("branch_id") or actor.branch_id
    branch_name = body.get("branch_name") or actor.branch_name

    succeeded = 200 <= status_code < 300
    url = request.url.path + (f"?{request.url.query}" if request.url.query else "")

    return {
        "type": template.type,
        "title": template.title,
        "description": template.description,
        "category": template.category,
        "priority": template.priority,
        "entity_type": template.entity_type,
        "entity_id": request.path_params.get(template.entity_id_param) if template.entity_id_param else None,
        "user_id": actor.user_id,
        "user_email": actor.email,
        "user_role": actor.role,
        "branch_id": branch_id,
        "branch_name": branch_name,
        "ip_address": client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
        "status": ActivityStatus.SUCCESS if succeeded else ActivityStatus.FAILED,
        "error_message": None if succeeded else error_message,
        "metadata": {
            **template.metadata,
            "method": request.method,
            "url": url,
            "status_code": status_code,
            "user_role": getattr(actor.role, "value", actor.role),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": getattr(request.state, "request_id", None),
        },
    }


async def _emit(request: Request, template: ActivityTemplate, status_code: int,
                error_message: Optional[str] = None) -> None:
    dispatcher: Optional[ActivityDispatcher] = getattr(request.app.state, "activity_dispatcher", None)
    if dispatcher is None:
        return
    try:
        payload = await build_activity_payload(request, template, status_code, error_message)
        if payload is not None:
            await dispatcher.dispatch(payload)
    except Exception as exc:
        logger.warning("Activity interception failed for %s %s: %s", request.method, request.url.path, exc)


# ── Interception ──────────────────────────────────────────────

def record_activity(handler: RequestHandler, template: ActivityTemplate) -> RequestHandler:
    """Wrap a request handler so its outcome is recorded as an activity."""

    @wraps(handler)
    async def intercepted(request: Request) -> Response:
        try:
            response = await handler(request)
        except (HTTPException, ServiceError) as exc:
            message = exc.detail if isinstance(exc, HTTPException) else exc.message
            await _emit(request, template, exc.status_code, str(message))
            raise
        except RequestValidationError:
            await _emit(request, template, 400, "Validation failed")
            raise
        except Exception as exc:
            await _emit(request, template, 500, exc.__class__.__name__)
            raise

        await _emit(request, template, response.status_code)
        return response

    return intercepted


def records(template: ActivityTemplate) -> Callable:
    """Mark an endpoint for interception by ActivityRoute."""

    def decorator(endpoint: Callable) -> Callable:
        endpoint.__activity_template__ = template
        return endpoint

    return decorator


class ActivityRoute(APIRoute):
    """Route class that wraps endpoints marked with @records(...)."""

    def get_route_handler(self) -> RequestHandler:
        handler = super().get_route_handler()
        template = getattr(self.endpoint, "__activity_template__", None)
        if template is None:
            return handler
        return record_activity(handler, template)


# ── Preconfigured templates ───────────────────────────────────

def admin_activity(
    type: ActivityType,
    title: str,
    description: str,
    category: ActivityCategory = ActivityCategory.MANAGEMENT,
    priority: ActivityPriority = ActivityPriority.NORMAL,
    **kwargs: Any,
) -> ActivityTemplate:
    return ActivityTemplate(type, title, description, category, priority, **kwargs)


def superadmin_activity(
    type: ActivityType,
    title: str,
    description: str,
    category: ActivityCategory = ActivityCategory.SYSTEM,
    priority: ActivityPriority = ActivityPriority.HIGH,
    **kwargs: Any,
) -> ActivityTemplate:
    return ActivityTemplate(type, title, description, category, priority, **kwargs)


def support_activity(
    type: ActivityType,
    title: str,
    description: str,
    category: ActivityCategory = ActivityCategory.SUPPORT,
    priority: ActivityPriority = ActivityPriority.NORMAL,
    **kwargs: Any,
) -> ActivityTemplate:
    return ActivityTemplate(type, title, description, category, priority, **kwargs)


LOGIN_ACTIVITY = ActivityTemplate(
    type=ActivityType.USER_LOGIN,
    title="User Login",
    description="User logged in",
    category=ActivityCategory.AUTHENTICATION,
)

LOGOUT_ACTIVITY = ActivityTemplate(
    type=ActivityType.USER_LOGOUT,
    title="User Logout",
    description="User logged out",
    category=ActivityCategory.AUTHENTICATION,
)

ADMIN_RESIDENT_ACTIVITY = admin_activity(
    ActivityType.RESIDENT_MANAGEMENT,
    "Resident Management",
    "Admin performed resident management action",
    entity_type=EntityType.RESIDENT,
)

ADMIN_PAYMENT_ACTIVITY = admin_activity(
    ActivityType.PAYMENT_MANAGEMENT,
    "Payment Management",
    "Admin performed payment management action",
    category=ActivityCategory.FINANCIAL,
    entity_type=EntityType.PAYMENT,
)

ADMIN_ROOM_ACTIVITY = admin_activity(
    ActivityType.ROOM_MANAGEMENT,
    "Room Management",
    "Admin performed room management action",
    entity_type=EntityType.ROOM,
)

SUPERADMIN_USER_ACTIVITY = superadmin_activity(
    ActivityType.USER_MANAGEMENT,
    "User Management",
    "Superadmin performed user management action",
    entity_type=EntityType.USER,
)

SUPERADMIN_SYSTEM_ACTIVITY = superadmin_activity(
    ActivityType.SYSTEM_MANAGEMENT,
    "System Management",
    "Superadmin performed system management action",
    entity_type=EntityType.SYSTEM,
)

SUPERADMIN_PG_ACTIVITY = superadmin_activity(
    ActivityType.PG_MANAGEMENT,
    "PG Management",
    "Superadmin performed PG management action",
    category=ActivityCategory.MANAGEMENT,
    entity_type=EntityType.PG,
)

SUPPORT_TICKET_ACTIVITY = support_activity(
    ActivityType.TICKET_MANAGEMENT,
    "Ticket Management",
    "Support staff performed ticket management action",
    entity_type=EntityType.TICKET,
)

SUPPORT_USER_ACTIVITY = support_activity(
    ActivityType.SUPPORT_USER_MANAGEMENT,
    "Support User Management",
    "Support staff performed user support action",
    entity_type=EntityType.USER,
)

NOTIFICATION_READ_ACTIVITY = ActivityTemplate(
    type=ActivityType.NOTIFICATION_READ,
    title="Notification Read",
    description="Notification marked as read",
    category=ActivityCategory.COMMUNICATION,
    priority=ActivityPriority.LOW,
    entity_type=EntityType.NOTIFICATION,
    entity_id_param="notification_id",
)
