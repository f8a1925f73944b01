"""
tests/test_activity_service.py
Tests for the recording service: validation, immutability, filtering,
pagination, timelines, statistics, retention and CSV export.
"""

import csv
import io
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.activity import service as activity_service
from shared.models.models import (
    Activity,
    ActivityCategory,
    ActivityStatus,
    ActivityType,
    Branch,
    EntityType,
    User,
    UserRole,
)
from shared.utils.exceptions import PersistenceError, ValidationError
from tests.conftest import add_activity


def _payload(user: User, **overrides) -> dict:
    data = {
        "type": "user_login",
        "title": "User Login",
        "description": "User logged in",
        "category": "authentication",
        "user_id": user.id,
        "user_email": user.email,
        "user_role": UserRole(user.role).value,
        "branch_id": user.branch_id,
    }
    data.update(overrides)
    return data


async def _count(db: AsyncSession) -> int:
    return await db.scalar(select(func.count(Activity.id)))


# ── Recording ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_record_activity_persists_one_row(db: AsyncSession, admin_user: User, branch: Branch):
    activity = await activity_service.record_activity(db, _payload(admin_user, metadata={"source": "test"}))
    await db.commit()

    assert await _count(db) == 1
    assert activity.type == ActivityType.USER_LOGIN
    assert activity.status == ActivityStatus.SUCCESS
    assert activity.branch_id == branch.id
    assert activity.meta == {"source": "test"}
    assert activity.timestamp is not None


@pytest.mark.asyncio
async def test_record_activity_ignores_caller_timestamp(db: AsyncSession, admin_user: User):
    """The timestamp is always server-assigned."""
    forged = datetime(2001, 1, 1, tzinfo=timezone.utc)
    activity = await activity_service.record_activity(db, _payload(admin_user, timestamp=forged))
    assert activity.timestamp.year != 2001


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "overrides",
    [
        {"type": "made_up_event"},
        {"category": None},
        {"user_email": None},
        {"user_role": "visitor"},
        {"title": ""},
    ],
)
async def test_record_activity_rejects_invalid_payload(db: AsyncSession, admin_user: User, overrides):
    with pytest.raises(ValidationError):
        await activity_service.record_activity(db, _payload(admin_user, **overrides))
    assert await _count(db) == 0


@pytest.mark.asyncio
async def test_record_activity_rejects_missing_actor(db: AsyncSession, admin_user: User):
    payload = _payload(admin_user)
    del payload["user_id"]
    with pytest.raises(ValidationError):
        await activity_service.record_activity(db, payload)
    assert await _count(db) == 0


@pytest.mark.asyncio
async def test_record_activity_safely_swallows_validation_errors(db: AsyncSession, admin_user: User):
    result = await activity_service.record_activity_safely(db, _payload(admin_user, type="nope"))
    assert result is None
    assert await _count(db) == 0


@pytest.mark.asyncio
async def test_record_activity_stringifies_entity_id(db: AsyncSession, admin_user: User):
    entity_id = uuid.uuid4()
    activity = await activity_service.record_activity(
        db, _payload(admin_user, entity_type="payment", entity_id=entity_id)
    )
    assert activity.entity_id == str(entity_id)
    assert activity.entity_type == EntityType.PAYMENT


# ── Immutability ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_recorded_activity_cannot_be_updated(db: AsyncSession, admin_user: User):
    activity = await activity_service.record_activity(db, _payload(admin_user))
    await db.commit()

    activity_id = activity.id
    activity.title = "Tampered"
    with pytest.raises(PersistenceError):
        await db.flush()
    await db.rollback()

    stored = await db.scalar(select(Activity.title).where(Activity.id == activity_id))
    assert stored == "User Login"


@pytest.mark.asyncio
async def test_recorded_activity_cannot_be_deleted(db: AsyncSession, admin_user: User):
    activity = await activity_service.record_activity(db, _payload(admin_user))
    await db.commit()

    await db.delete(activity)
    with pytest.raises(PersistenceError):
        await db.flush()
    await db.rollback()

    assert await _count(db) == 1


# ── Listing ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_filters_by_branch(db: AsyncSession, admin_user: User, branch: Branch, other_branch: Branch):
    await add_activity(db, admin_user)
    await add_activity(db, admin_user, branch_id=other_branch.id)

    page = await activity_service.list_activities(db, {"branch_id": str(branch.id)})

    assert page.pagination.total == 1
    assert page.items[0].branch_id == branch.id


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "page_number,expected_items",
    [(1, 10), (2, 10), (3, 5), (4, 0)],
)
async def test_list_pagination(db: AsyncSession, admin_user: User, page_number, expected_items):
    for _ in range(25):
        await add_activity(db, admin_user, commit=False)
    await db.commit()

    page = await activity_service.list_activities(db, {"page": page_number, "limit": 10})

    assert page.pagination.total == 25
    assert page.pagination.pages == 3
    assert len(page.items) == expected_items


@pytest.mark.asyncio
async def test_list_limit_is_capped(db: AsyncSession, admin_user: User):
    page = await activity_service.list_activities(db, {"limit": 1000})
    assert page.pagination.limit == 100


@pytest.mark.asyncio
async def test_list_rejects_non_positive_page(db: AsyncSession):
    with pytest.raises(ValidationError):
        await activity_service.list_activities(db, {"page": 0})


@pytest.mark.asyncio
async def test_list_defaults_to_newest_first(db: AsyncSession, admin_user: User):
    now = datetime.now(timezone.utc).replace(microsecond=0)
    oldest = await add_activity(db, admin_user, timestamp=now - timedelta(hours=2))
    newest = await add_activity(db, admin_user, timestamp=now)

    page = await activity_service.list_activities(db)

    assert [i.id for i in page.items] == [newest.id, oldest.id]


@pytest.mark.asyncio
async def test_list_sort_override(db: AsyncSession, admin_user: User):
    await add_activity(db, admin_user, title="Bravo")
    await add_activity(db, admin_user, title="Alpha")

    page = await activity_service.list_activities(db, {"sort": "title"})
    assert [i.title for i in page.items] == ["Alpha", "Bravo"]

    with pytest.raises(ValidationError):
        await activity_service.list_activities(db, {"sort": "ip_address; drop table"})


@pytest.mark.asyncio
async def test_list_free_text_search_is_case_insensitive(db: AsyncSession, admin_user: User):
    await add_activity(db, admin_user, title="Rent collected for Room 4")
    await add_activity(
        db, admin_user,
        type=ActivityType.TICKET_CREATE, category=ActivityCategory.SUPPORT, title="Leaky tap",
    )
    await add_activity(db, admin_user, entity_name="Resident Priya")

    assert (await activity_service.list_activities(db, {"q": "RENT"})).pagination.total == 1
    # Matches the type column
    assert (await activity_service.list_activities(db, {"q": "ticket_"})).pagination.total == 1
    # Matches the entity name
    assert (await activity_service.list_activities(db, {"q": "priya"})).pagination.total == 1
    # LIKE wildcards are taken literally
    assert (await activity_service.list_activities(db, {"q": "%"})).pagination.total == 0


@pytest.mark.asyncio
async def test_list_date_range_is_inclusive(db: AsyncSession, admin_user: User):
    base = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    for offset in range(4):
        await add_activity(db, admin_user, timestamp=base + timedelta(days=offset))

    page = await activity_service.list_activities(db, {
        "start_date": base + timedelta(days=1),
        "end_date": base + timedelta(days=2),
    })

    assert page.pagination.total == 2


@pytest.mark.asyncio
async def test_list_exact_match_filters(db: AsyncSession, admin_user: User, support_user: User):
    await add_activity(db, admin_user, status=ActivityStatus.FAILED)
    await add_activity(db, support_user)

    assert (await activity_service.list_activities(db, {"status": "failed"})).pagination.total == 1
    assert (await activity_service.list_activities(db, {"user_role": "support"})).pagination.total == 1
    with pytest.raises(ValidationError):
        await activity_service.list_activities(db, {"category": "gossip"})


@pytest.mark.asyncio
async def test_user_activities_resolve_branch_name(db: AsyncSession, admin_user: User, branch: Branch):
    await add_activity(db, admin_user)

    page = await activity_service.get_user_activities(db, admin_user.id)

    assert page.pagination.total == 1
    assert page.items[0].branch_display_name == "Koramangala"


@pytest.mark.asyncio
async def test_branch_activities_resolve_user_name(db: AsyncSession, admin_user: User, branch: Branch):
    await add_activity(db, admin_user)

    page = await activity_service.get_branch_activities(db, branch.id)

    assert page.items[0].user_display_name == "Asha"


# ── Timeline ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_entity_timeline_is_chronological(db: AsyncSession, admin_user: User):
    ticket_id = str(uuid.uuid4())
    now = datetime.now(timezone.utc).replace(microsecond=0)
    resolved = await add_activity(
        db, admin_user, type=ActivityType.TICKET_RESOLVE, category=ActivityCategory.SUPPORT,
        entity_type=EntityType.TICKET, entity_id=ticket_id, timestamp=now,
    )
    created = await add_activity(
        db, admin_user, type=ActivityType.TICKET_CREATE, category=ActivityCategory.SUPPORT,
        entity_type=EntityType.TICKET, entity_id=ticket_id, timestamp=now - timedelta(days=1),
    )
    await add_activity(db, admin_user, entity_type=EntityType.TICKET, entity_id=str(uuid.uuid4()))

    timeline = await activity_service.get_entity_timeline(db, "ticket", ticket_id)

    assert [a.id for a in timeline] == [created.id, resolved.id]


@pytest.mark.asyncio
async def test_entity_timeline_rejects_unknown_entity_type(db: AsyncSession):
    with pytest.raises(ValidationError):
        await activity_service.get_entity_timeline(db, "spaceship", "1")


# ── Stats ──────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_stats_groups_and_orders_by_count(db: AsyncSession, admin_user: User):
    for _ in range(3):
        await add_activity(db, admin_user, type=ActivityType.TICKET_CREATE, category=ActivityCategory.SUPPORT)
    await add_activity(db, admin_user, type=ActivityType.TICKET_RESOLVE, category=ActivityCategory.SUPPORT)

    stats = await activity_service.get_activity_stats(db, "7d")

    assert [(s.type, s.count) for s in stats] == [("ticket_create", 3), ("ticket_resolve", 1)]


@pytest.mark.asyncio
async def test_stats_excludes_records_outside_window(db: AsyncSession, admin_user: User):
    await add_activity(db, admin_user, timestamp=datetime.now(timezone.utc) - timedelta(hours=2))
    await add_activity(db, admin_user)

    stats = await activity_service.get_activity_stats(db, "1h")

    assert len(stats) == 1
    assert stats[0].count == 1


@pytest.mark.asyncio
async def test_stats_rejects_unknown_range(db: AsyncSession):
    with pytest.raises(ValidationError):
        await activity_service.get_activity_stats(db, "90d")


# ── Retention ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_purge_removes_only_records_older_than_cutoff(db: AsyncSession, admin_user: User):
    now = datetime.now(timezone.utc)
    await add_activity(db, admin_user, timestamp=now - timedelta(days=100))
    kept = await add_activity(db, admin_user, timestamp=now - timedelta(days=10))

    result = await activity_service.purge_activities(db, days_to_keep=90)
    await db.commit()

    assert result["deleted_count"] == 1
    remaining = (await db.execute(select(Activity.id))).scalars().all()
    assert remaining == [kept.id]


@pytest.mark.asyncio
async def test_purge_rejects_non_positive_retention(db: AsyncSession):
    with pytest.raises(ValidationError):
        await activity_service.purge_activities(db, days_to_keep=0)


# ── Export ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_export_csv(db: AsyncSession, admin_user: User):
    await add_activity(db, admin_user, title='Rent "March", Room 4')
    page = await activity_service.list_activities(db)

    rows = list(csv.reader(io.StringIO(activity_service.export_activities_csv(page.items))))

    assert rows[0] == activity_service.CSV_COLUMNS
    assert rows[1][1] == "user_login"
    assert rows[1][4] == 'Rent "March", Room 4'
    assert rows[1][6] == admin_user.email
