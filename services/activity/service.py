"""
services/activity/service.py
Recording service for the activity audit trail.

Writes exactly one immutable row per call and exposes the paginated,
filtered and aggregated read views. Scoping by caller role lives one
level up, in services/activity/scoping.py; every query here accepts
extra `criteria` so the scope predicate can be AND-ed in.
"""

import csv
import io
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional, Sequence, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import ColumnElement, String, cast, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.models.models import Activity, Branch, EntityType, User
from shared.schemas.schemas import (
    ActivityCreate,
    ActivityFilters,
    ActivityPage,
    ActivityResponse,
    ActivityStatsItem,
    Pagination,
)
from shared.utils.exceptions import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

SORTABLE_FIELDS = {
    "timestamp": Activity.timestamp,
    "type": Activity.type,
    "category": Activity.category,
    "priority": Activity.priority,
    "status": Activity.status,
    "title": Activity.title,
    "user_email": Activity.user_email,
    "user_role": Activity.user_role,
    "branch_name": Activity.branch_name,
    "entity_name": Activity.entity_name,
}

EXACT_MATCH_FIELDS = ("user_id", "branch_id", "type", "category", "priority", "user_role", "status")

CSV_COLUMNS = [
    "timestamp", "type", "category", "status", "title", "description",
    "user_email", "user_role", "branch_name", "entity_type", "entity_id", "entity_name",
]


def _validation_message(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err["loc"]) or "input"
        parts.append(f"{loc}: {err['msg']}")
    return "; ".join(parts)


def parse_filters(filters: Union[ActivityFilters, dict, None]) -> ActivityFilters:
    if isinstance(filters, ActivityFilters):
        return filters
    try:
        return ActivityFilters.model_validate(filters or {})
    except PydanticValidationError as exc:
        raise ValidationError(_validation_message(exc)) from exc


# ── Recording ─────────────────────────────────────────────────

async def record_activity(db: AsyncSession, data: Union[ActivityCreate, dict]) -> Activity:
    """
    Validate and persist one activity. The timestamp is always assigned
    here; a caller-supplied one is discarded.

    Raises ValidationError (nothing persisted) or PersistenceError.
    """
    try:
        payload = data if isinstance(data, ActivityCreate) else ActivityCreate.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(_validation_message(exc)) from exc

    fields = payload.model_dump(exclude={"metadata"})
    activity = Activity(
        **fields,
        meta=payload.metadata,
        timestamp=datetime.now(timezone.utc),
    )
    try:
        db.add(activity)
        await db.flush()
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to record activity: {exc.__class__.__name__}") from exc

    logger.debug("Recorded activity %s (%s) for %s", activity.id, activity.type, activity.user_email)
    return activity


async def record_activity_safely(
    db: AsyncSession, data: Union[ActivityCreate, dict]
) -> Optional[Activity]:
    """
    Call-site helper for business operations: an audit failure is logged
    and swallowed so it can never fail the operation that triggered it.

    The insert runs in a SAVEPOINT; a failed write rolls back only the
    audit row and leaves the caller's transaction usable.
    """
    try:
        async with db.begin_nested():
            return await record_activity(db, data)
    except (ValidationError, PersistenceError) as exc:
        logger.warning("Activity not recorded: %s", exc.message)
        return None


# ── Queries ───────────────────────────────────────────────────

def _as_utc(value: datetime) -> datetime:
    """Naive datetimes are taken as UTC, the zone every timestamp is stored in."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _filter_criteria(filters: ActivityFilters) -> list[ColumnElement]:
    criteria: list[ColumnElement] = []
    for name in EXACT_MATCH_FIELDS:
        value = getattr(filters, name)
        if value is not None:
            criteria.append(getattr(Activity, name) == value)

    if filters.start_date:
        criteria.append(Activity.timestamp >= _as_utc(filters.start_date))
    if filters.end_date:
        criteria.append(Activity.timestamp <= _as_utc(filters.end_date))

    term = (filters.q or "").strip()
    if term:
        criteria.append(or_(
            Activity.title.icontains(term, autoescape=True),
            Activity.description.icontains(term, autoescape=True),
            Activity.entity_name.icontains(term, autoescape=True),
            Activity.user_email.icontains(term, autoescape=True),
            cast(Activity.type, String).icontains(term, autoescape=True),
            cast(Activity.category, String).icontains(term, autoescape=True),
        ))
    return criteria


def _order_by(sort: str) -> list:
    key = (sort or "-timestamp").strip()
    descending = key.startswith("-")
    key = key.lstrip("-+")
    column = SORTABLE_FIELDS.get(key)
    if column is None:
        raise ValidationError(f"Unsupported sort key '{key}'. Valid: {sorted(SORTABLE_FIELDS)}")
    if descending:
        return [column.desc(), Activity.id.desc()]
    return [column.asc(), Activity.id.asc()]


async def list_activities(
    db: AsyncSession,
    filters: Union[ActivityFilters, dict, None] = None,
    criteria: Sequence[ColumnElement] = (),
) -> ActivityPage:
    """Filtered, sorted, paginated view of the log."""
    filters = parse_filters(filters)
    where = [*_filter_criteria(filters), *criteria]
    order = _order_by(filters.sort)

    total = await db.scalar(select(func.count(Activity.id)).where(*where)) or 0
    result = await db.execute(
        select(Activity)
        .where(*where)
        .order_by(*order)
        .offset((filters.page - 1) * filters.limit)
        .limit(filters.limit)
    )
    rows = result.scalars().all()

    return ActivityPage(
        items=[ActivityResponse.model_validate(r) for r in rows],
        pagination=Pagination.build(filters.page, filters.limit, total),
    )


async def _branch_names(db: AsyncSession, ids: Iterable[uuid.UUID]) -> dict:
    ids = {i for i in ids if i}
    if not ids:
        return {}
    result = await db.execute(select(Branch.id, Branch.name).where(Branch.id.in_(ids)))
    return dict(result.all())


async def _user_names(db: AsyncSession, ids: Iterable[uuid.UUID]) -> dict:
    ids = {i for i in ids if i}
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u.display_name for u in result.scalars()}


async def get_user_activities(
    db: AsyncSession,
    user_id: uuid.UUID,
    filters: Union[ActivityFilters, dict, None] = None,
    criteria: Sequence[ColumnElement] = (),
) -> ActivityPage:
    """One actor's activities, each item carrying its branch display name."""
    filters = parse_filters(filters).model_copy(update={"user_id": user_id})
    page = await list_activities(db, filters, criteria)

    names = await _branch_names(db, (i.branch_id for i in page.items))
    for item in page.items:
        item.branch_display_name = names.get(item.branch_id, item.branch_name)
    return page


async def get_branch_activities(
    db: AsyncSession,
    branch_id: uuid.UUID,
    filters: Union[ActivityFilters, dict, None] = None,
    criteria: Sequence[ColumnElement] = (),
) -> ActivityPage:
    """One branch's activities, each item carrying its actor display name."""
    filters = parse_filters(filters).model_copy(update={"branch_id": branch_id})
    page = await list_activities(db, filters, criteria)

    names = await _user_names(db, (i.user_id for i in page.items))
    for item in page.items:
        item.user_display_name = names.get(item.user_id, item.user_email)
    return page


async def get_entity_timeline(
    db: AsyncSession,
    entity_type: Union[EntityType, str],
    entity_id: str,
    criteria: Sequence[ColumnElement] = (),
) -> list[ActivityResponse]:
    """Chronological narrative of one subject: oldest first."""
    try:
        entity_type = EntityType(entity_type)
    except ValueError:
        raise ValidationError(f"Unknown entity type '{entity_type}'")

    result = await db.execute(
        select(Activity)
        .where(Activity.entity_type == entity_type, Activity.entity_id == str(entity_id), *criteria)
        .order_by(Activity.timestamp.asc(), Activity.id.asc())
    )
    return [ActivityResponse.model_validate(r) for r in result.scalars()]


async def get_activity_stats(
    db: AsyncSession,
    time_range: str = "24h",
    criteria: Sequence[ColumnElement] = (),
) -> list[ActivityStatsItem]:
    """
    Counts per (type, category, status) over the trailing window,
    most frequent first. Read-only.
    """
    window = TIME_RANGES.get(time_range)
    if window is None:
        raise ValidationError(f"Invalid time range '{time_range}'. Valid: {list(TIME_RANGES)}")
    since = datetime.now(timezone.utc) - window

    count = func.count(Activity.id).label("count")
    result = await db.execute(
        select(
            Activity.type,
            Activity.category,
            Activity.status,
            count,
            func.max(Activity.timestamp).label("last_activity"),
        )
        .where(Activity.timestamp >= since, *criteria)
        .group_by(Activity.type, Activity.category, Activity.status)
        .order_by(count.desc(), Activity.type.asc())
    )
    return [
        ActivityStatsItem(
            type=row.type,
            category=row.category,
            status=row.status,
            count=row.count,
            last_activity=row.last_activity,
        )
        for row in result.all()
    ]


# ── Maintenance ───────────────────────────────────────────────

def retention_cutoff(days_to_keep: int) -> datetime:
    if days_to_keep < 1:
        raise ValidationError("days_to_keep must be at least 1")
    return datetime.now(timezone.utc) - timedelta(days=days_to_keep)


async def purge_activities(db: AsyncSession, days_to_keep: int) -> dict[str, Any]:
    """
    Explicit age-based retention. Bulk statement, so the per-row
    append-only guards on the mapper do not fire.
    """
    cutoff = retention_cutoff(days_to_keep)
    try:
        result = await db.execute(
            delete(Activity)
            .where(Activity.timestamp < cutoff)
            .execution_options(synchronize_session=False)
        )
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Failed to purge activities: {exc.__class__.__name__}") from exc

    logger.info("Purged %s activities older than %s", result.rowcount, cutoff.isoformat())
    return {"deleted_count": result.rowcount, "cutoff_date": cutoff}


# ── Export ────────────────────────────────────────────────────

def export_activities_csv(items: Iterable[ActivityResponse]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for item in items:
        writer.writerow([
            item.timestamp.isoformat(),
            item.type,
            item.category,
            item.status,
            item.title,
            item.description,
            item.user_email,
            item.user_role,
            item.branch_name or "",
            item.entity_type or "",
            item.entity_id or "",
            item.entity_name or "",
        ])
    return buffer.getvalue()
