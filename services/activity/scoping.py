"""
services/activity/scoping.py
Role-scoped query engine for the activity audit trail.

Each caller role sees a different slice of the same log. The slice is
resolved once per request into an ActivityScope, tagged with the tier
of the decision table that produced it:

    role        available context                 tier               predicate
    ─────────   ───────────────────────────────   ─────────────────  ─────────────────────────────
    admin       session carries branch_id         session_branch     branch_id = session branch
    admin       user's PG has a default branch    default_branch     branch_id = default branch
    admin       neither                           own_actions        user_id = admin
    superadmin  -                                 operational_roles  user_role in (superadmin, support, admin)
    support     -                                 support_only       user_role = support
    other       -                                 AccessDeniedError

The predicate is AND-ed with whatever the caller filters on, so caller
filters can narrow a slice but never widen it. The one exception is the
opt-in diagnostic fallback for `own_actions` admins (see ActivityQueryEngine).
"""

import logging
import uuid
from dataclasses import dataclass
from enum import Enum as PyEnum
from typing import Awaitable, Callable, List, Optional, Union

from sqlalchemy import ColumnElement, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.activity import service as activity_service
from shared.middleware.auth import ActorContext
from shared.models.models import Activity, Branch, EntityType, User, UserRole
from shared.schemas.schemas import (
    MAX_PAGE_LIMIT,
    ActivityFilters,
    ActivityPage,
    ActivityResponse,
    ActivityStatsItem,
)
from shared.utils.exceptions import AccessDeniedError

logger = logging.getLogger(__name__)

OPERATIONAL_ROLES = (UserRole.SUPERADMIN, UserRole.SUPPORT, UserRole.ADMIN)


class ScopeTier(str, PyEnum):
    SESSION_BRANCH = "session_branch"
    DEFAULT_BRANCH = "default_branch"
    OWN_ACTIONS = "own_actions"
    OPERATIONAL_ROLES = "operational_roles"
    SUPPORT_ONLY = "support_only"
    UNSCOPED_DEBUG = "unscoped_debug"


@dataclass(frozen=True)
class ActivityScope:
    tier: ScopeTier
    branch_id: Optional[uuid.UUID] = None
    user_id: Optional[uuid.UUID] = None
    user_roles: tuple[UserRole, ...] = ()

    def criteria(self) -> list[ColumnElement]:
        clauses: list[ColumnElement] = []
        if self.branch_id is not None:
            clauses.append(Activity.branch_id == self.branch_id)
        if self.user_id is not None:
            clauses.append(Activity.user_id == self.user_id)
        if len(self.user_roles) == 1:
            clauses.append(Activity.user_role == self.user_roles[0])
        elif self.user_roles:
            clauses.append(Activity.user_role.in_(self.user_roles))
        return clauses

    @property
    def cache_key(self) -> str:
        return f"{self.tier.value}:{self.branch_id or '-'}:{self.user_id or '-'}"


# ── Branch resolution ────────────────────────────────────────

async def find_default_branch(db: AsyncSession, user_id: uuid.UUID) -> Optional[Branch]:
    """The active default branch of the PG the user is assigned to, if any."""
    pg_id = await db.scalar(select(User.pg_id).where(User.id == user_id))
    if pg_id is None:
        return None
    result = await db.execute(
        select(Branch)
        .where(Branch.pg_id == pg_id, Branch.is_default.is_(True), Branch.is_active.is_(True))
        .order_by(Branch.created_at.asc())
        .limit(1)
    )
    return result.scalar_one_or_none()


# ── Decision table ───────────────────────────────────────────

async def _admin_scope(db: AsyncSession, actor: ActorContext) -> ActivityScope:
    if actor.branch_id is not None:
        return ActivityScope(ScopeTier.SESSION_BRANCH, branch_id=actor.branch_id)

    default_branch = await find_default_branch(db, actor.user_id)
    if default_branch is not None:
        return ActivityScope(ScopeTier.DEFAULT_BRANCH, branch_id=default_branch.id)

    return ActivityScope(ScopeTier.OWN_ACTIONS, user_id=actor.user_id)


async def _superadmin_scope(db: AsyncSession, actor: ActorContext) -> ActivityScope:
    return ActivityScope(ScopeTier.OPERATIONAL_ROLES, user_roles=OPERATIONAL_ROLES)


async def _support_scope(db: AsyncSession, actor: ActorContext) -> ActivityScope:
    return ActivityScope(ScopeTier.SUPPORT_ONLY, user_roles=(UserRole.SUPPORT,))


ScopeResolver = Callable[[AsyncSession, ActorContext], Awaitable[ActivityScope]]

SCOPE_RESOLVERS: dict[UserRole, ScopeResolver] = {
    UserRole.ADMIN: _admin_scope,
    UserRole.SUPERADMIN: _superadmin_scope,
    UserRole.SUPPORT: _support_scope,
}


async def resolve_scope(db: AsyncSession, actor: ActorContext) -> ActivityScope:
    resolver = SCOPE_RESOLVERS.get(UserRole(actor.role))
    if resolver is None:
        raise AccessDeniedError(f"Role '{UserRole(actor.role).value}' cannot view activity logs")
    return await resolver(db, actor)


# ── Engine ───────────────────────────────────────────────────

class ActivityQueryEngine:
    """
    Role-scoped facade over the recording service's read operations.

    debug_fallback: when an admin has no branch to be scoped to and their
    own actions come back empty, return the unscoped result instead of an
    empty dashboard. Diagnostic only; off unless explicitly enabled, and
    every use is logged.
    """

    def __init__(
        self,
        db: AsyncSession,
        actor: ActorContext,
        debug_fallback: Optional[bool] = None,
    ):
        self.db = db
        self.actor = actor
        self.debug_fallback = (
            settings.ACTIVITY_ADMIN_DEBUG_FALLBACK if debug_fallback is None else debug_fallback
        )
        self._scope: Optional[ActivityScope] = None

    async def scope(self) -> ActivityScope:
        if self._scope is None:
            self._scope = await resolve_scope(self.db, self.actor)
        return self._scope

    def _fallback_allowed(self, scope: ActivityScope) -> bool:
        return self.debug_fallback and scope.tier == ScopeTier.OWN_ACTIONS

    def _log_fallback(self, view: str) -> None:
        logger.warning(
            "Diagnostic unscoped %s served to admin %s (%s): no branch resolved and no own activity",
            view, self.actor.user_id, self.actor.email,
        )

    async def list(self, filters: Union[ActivityFilters, dict, None] = None) -> ActivityPage:
        scope = await self.scope()
        filters = activity_service.parse_filters(filters)
        page = await activity_service.list_activities(self.db, filters, scope.criteria())
        page.scope = scope.tier.value

        if page.pagination.total == 0 and self._fallback_allowed(scope):
            self._log_fallback("activity list")
            page = await activity_service.list_activities(self.db, filters)
            page.scope = ScopeTier.UNSCOPED_DEBUG.value
        return page

    async def stats(self, time_range: str = "24h") -> List[ActivityStatsItem]:
        scope = await self.scope()
        stats = await activity_service.get_activity_stats(self.db, time_range, scope.criteria())
        if not stats and self._fallback_allowed(scope):
            self._log_fallback("activity stats")
            stats = await activity_service.get_activity_stats(self.db, time_range)
        return stats

    async def by_user(
        self, user_id: uuid.UUID, filters: Union[ActivityFilters, dict, None] = None
    ) -> ActivityPage:
        scope = await self.scope()
        page = await activity_service.get_user_activities(
            self.db, user_id, filters, scope.criteria()
        )
        page.scope = scope.tier.value
        return page

    async def by_branch(
        self, branch_id: uuid.UUID, filters: Union[ActivityFilters, dict, None] = None
    ) -> ActivityPage:
        scope = await self.scope()
        if UserRole(self.actor.role) == UserRole.ADMIN and scope.branch_id != branch_id:
            raise AccessDeniedError(
                "Access denied: admins can only access activities from their assigned branch"
            )
        page = await activity_service.get_branch_activities(
            self.db, branch_id, filters, scope.criteria()
        )
        page.scope = scope.tier.value
        return page

    async def timeline(
        self, entity_type: Union[EntityType, str], entity_id: str
    ) -> List[ActivityResponse]:
        scope = await self.scope()
        return await activity_service.get_entity_timeline(
            self.db, entity_type, entity_id, scope.criteria()
        )

    async def export(
        self, filters: Optional[dict] = None, max_rows: Optional[int] = None
    ) -> List[ActivityResponse]:
        """Page through the scoped list until `max_rows` rows are collected."""
        max_rows = max_rows or settings.ACTIVITY_EXPORT_MAX_ROWS
        filters = dict(filters or {})
        items: List[ActivityResponse] = []
        page_number = 1
        while len(items) < max_rows:
            page = await self.list({**filters, "page": page_number, "limit": MAX_PAGE_LIMIT})
            items.extend(page.items)
            if page_number >= page.pagination.pages:
                break
            page_number += 1
        return items[:max_rows]
