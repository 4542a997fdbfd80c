"""
Swapmatch — Preference Graph Store (PostgreSQL)

Ground truth for items, swipes, matches, opportunities and dismissals.  The
rest of the engine only ever sees the immutable records from
``app.services.graph``; ORM rows never leave this module.

Race-free writes rely on the database rather than on process state:

- swipes, matches, opportunities and dismissals use
  ``INSERT ... ON CONFLICT DO NOTHING RETURNING`` against their natural keys
  (a lost race returns nothing and is treated as a no-op),
- the online swipe path additionally takes a transaction-scoped advisory
  lock keyed on the unordered item pair, so two reciprocal swipes on the same
  pair are serialised while unrelated pairs proceed in parallel,
- lifecycle transitions are conditional ``UPDATE ... WHERE status = 'active'``.

Driver-level failures (connection drops, pool timeouts) are translated into
``TransientStoreError``.  The opportunity insert runs inside a savepoint; a
unique violation that slips past ``ON CONFLICT`` surfaces as ``ConflictError``
without poisoning the surrounding transaction.
"""

from __future__ import annotations

import asyncio
import functools
import hashlib
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncContextManager, AsyncIterator, Callable, Iterable

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import session_scope
from app.models.item import Item
from app.models.match import Match, Swipe
from app.models.opportunity import OpportunityDismissal, SwapOpportunity
from app.models.user import User
from app.services.graph import (
    STATUS_ACTIVE,
    GraphSnapshot,
    ItemNode,
    MatchRecord,
    OpportunityRecord,
    Participant,
    SwipeRecord,
    UserProfile,
    pair_key,
)
from app.utils.errors import ConflictError, TransientStoreError

logger = structlog.get_logger("swapmatch.graph_store")

_TRANSIENT_ERRORS = (
    OperationalError,
    InterfaceError,
    PoolTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
)

_UNIQUE_VIOLATION = "23505"


def _translate_errors(fn):
    """Re-raise driver failures as ``TransientStoreError`` and unique
    violations that slipped past ``ON CONFLICT`` as ``ConflictError``."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except IntegrityError as exc:
            if getattr(exc.orig, "sqlstate", None) != _UNIQUE_VIOLATION:
                raise
            raise ConflictError(
                f"Graph store {fn.__name__} lost a uniqueness race",
                details={"operation": fn.__name__},
            ) from exc
        except _TRANSIENT_ERRORS as exc:
            logger.warning("store_operation_failed", operation=fn.__name__, error=str(exc))
            raise TransientStoreError(
                f"Graph store {fn.__name__} failed",
                details={"operation": fn.__name__},
            ) from exc

    return wrapper


def _uuid(value: str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


def _parse_ids(values: Iterable[str]) -> list[uuid.UUID]:
    parsed = []
    for value in values:
        try:
            parsed.append(_uuid(value))
        except (TypeError, ValueError):
            continue
    return parsed


def advisory_lock_key(item_a_id: str, item_b_id: str) -> int:
    """Signed 64-bit lock key for an unordered item pair."""
    lo, hi = pair_key(str(item_a_id), str(item_b_id))
    digest = hashlib.blake2b(f"{lo}:{hi}".encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


# ── Row -> record conversion ──────────────────────────────────────────────────

def _item_node(item: Item, owner_lat: float | None, owner_lon: float | None) -> ItemNode:
    # Items without their own coordinates inherit the owner's home location.
    if item.latitude is not None and item.longitude is not None:
        lat, lon = item.latitude, item.longitude
    else:
        lat, lon = owner_lat, owner_lon

    return ItemNode(
        id=str(item.id),
        owner_id=str(item.user_id),
        category=item.category,
        condition=item.condition,
        desired_categories=frozenset(item.desired_categories or ()),
        created_at=item.created_at,
        is_active=item.is_active,
        value_min=item.value_min,
        value_max=item.value_max,
        latitude=lat,
        longitude=lon,
        title=item.title,
        photos=tuple(item.photos or ()),
    )


def _opportunity_record(row: SwapOpportunity) -> OpportunityRecord:
    return OpportunityRecord(
        id=str(row.id),
        cycle_type=row.cycle_type,
        participants=tuple(
            Participant(user_id=str(p["user_id"]), item_id=str(p["item_id"]))
            for p in row.participants
        ),
        confidence_score=row.confidence_score,
        status=row.status,
        created_at=row.created_at,
        expires_at=row.expires_at,
        score_breakdown=dict(row.score_breakdown or {}),
        closed_reason=row.closed_reason,
        updated_at=row.updated_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Store
# ──────────────────────────────────────────────────────────────────────────────

class SqlGraphStore:
    """Preference graph access bound to one ``AsyncSession`` (one transaction)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    # ── Locks ─────────────────────────────────────────────────────────────

    @_translate_errors
    async def pair_lock(self, item_a_id: str, item_b_id: str) -> None:
        """Block until this transaction owns the pair's advisory lock."""
        key = advisory_lock_key(item_a_id, item_b_id)
        await self.session.execute(select(func.pg_advisory_xact_lock(key)))

    # ── Items & profiles ──────────────────────────────────────────────────

    @_translate_errors
    async def get_items(self, item_ids: Iterable[str]) -> dict[str, ItemNode]:
        ids = _parse_ids(item_ids)
        if not ids:
            return {}
        stmt = (
            select(Item, User.latitude, User.longitude)
            .join(User, User.id == Item.user_id)
            .where(Item.id.in_(ids))
        )
        rows = (await self.session.execute(stmt)).all()
        return {str(item.id): _item_node(item, lat, lon) for item, lat, lon in rows}

    @_translate_errors
    async def get_profiles(self, user_ids: Iterable[str]) -> dict[str, UserProfile]:
        ids = _parse_ids(user_ids)
        if not ids:
            return {}
        rows = (await self.session.execute(select(User).where(User.id.in_(ids)))).scalars()
        return {
            str(u.id): UserProfile(
                id=str(u.id),
                display_name=u.display_name,
                avatar_url=u.avatar_url,
                latitude=u.latitude,
                longitude=u.longitude,
            )
            for u in rows
        }

    # ── Swipes ────────────────────────────────────────────────────────────

    @_translate_errors
    async def insert_swipe(
        self, swiper_item_id: str, swiped_item_id: str, liked: bool, at: datetime
    ) -> SwipeRecord | None:
        """Insert a swipe; ``None`` when the directed pair was already swiped."""
        swipe_id = uuid.uuid4()
        stmt = (
            pg_insert(Swipe)
            .values(
                id=swipe_id,
                swiper_item_id=_uuid(swiper_item_id),
                swiped_item_id=_uuid(swiped_item_id),
                liked=liked,
                created_at=at,
            )
            .on_conflict_do_nothing(constraint="uq_swipe_pair")
            .returning(Swipe.id)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None:
            return None
        return SwipeRecord(
            id=str(swipe_id),
            swiper_item_id=str(swiper_item_id),
            swiped_item_id=str(swiped_item_id),
            liked=liked,
            created_at=at,
        )

    @_translate_errors
    async def get_swipe(self, swiper_item_id: str, swiped_item_id: str) -> SwipeRecord | None:
        stmt = select(Swipe).where(
            Swipe.swiper_item_id == _uuid(swiper_item_id),
            Swipe.swiped_item_id == _uuid(swiped_item_id),
        )
        swipe = (await self.session.execute(stmt)).scalar_one_or_none()
        if swipe is None:
            return None
        return SwipeRecord(
            id=str(swipe.id),
            swiper_item_id=str(swipe.swiper_item_id),
            swiped_item_id=str(swipe.swiped_item_id),
            liked=swipe.liked,
            created_at=swipe.created_at,
        )

    # ── Matches ───────────────────────────────────────────────────────────

    @_translate_errors
    async def insert_match(
        self, item_a_id: str, item_b_id: str, at: datetime
    ) -> tuple[MatchRecord, bool]:
        """Create the Match for an unordered pair unless it already exists.

        Returns the match and whether this call created it.
        """
        lo, hi = pair_key(str(item_a_id), str(item_b_id))
        match_id = uuid.uuid4()
        stmt = (
            pg_insert(Match)
            .values(id=match_id, item_a_id=_uuid(lo), item_b_id=_uuid(hi), created_at=at)
            .on_conflict_do_nothing(constraint="uq_match_pair")
            .returning(Match.id)
        )
        row = (await self.session.execute(stmt)).first()
        if row is not None:
            return MatchRecord(id=str(match_id), item_a_id=lo, item_b_id=hi, created_at=at), True

        existing = await self.get_match(lo, hi)
        return existing, False

    @_translate_errors
    async def get_match(self, item_a_id: str, item_b_id: str) -> MatchRecord | None:
        lo, hi = pair_key(str(item_a_id), str(item_b_id))
        stmt = select(Match).where(Match.item_a_id == _uuid(lo), Match.item_b_id == _uuid(hi))
        match = (await self.session.execute(stmt)).scalar_one_or_none()
        if match is None:
            return None
        return MatchRecord(
            id=str(match.id),
            item_a_id=str(match.item_a_id),
            item_b_id=str(match.item_b_id),
            created_at=match.created_at,
            is_completed=match.is_completed,
            completed_at=match.completed_at,
        )

    @_translate_errors
    async def matched_item_ids(self, item_ids: Iterable[str]) -> set[str]:
        """Subset of ``item_ids`` already referenced by any Match."""
        ids = _parse_ids(item_ids)
        if not ids:
            return set()
        stmt = select(Match.item_a_id, Match.item_b_id).where(
            Match.item_a_id.in_(ids) | Match.item_b_id.in_(ids)
        )
        wanted = {str(i) for i in ids}
        found: set[str] = set()
        for a, b in (await self.session.execute(stmt)).all():
            found.update({str(a), str(b)} & wanted)
        return found

    # ── Snapshot ──────────────────────────────────────────────────────────

    @_translate_errors
    async def load_snapshot(self, as_of: datetime) -> GraphSnapshot:
        """Read every active item plus the swipe and match edges up to ``as_of``."""
        item_stmt = (
            select(Item, User.latitude, User.longitude)
            .join(User, User.id == Item.user_id)
            .where(Item.is_active.is_(True), Item.created_at <= as_of)
        )
        items = {
            str(item.id): _item_node(item, lat, lon)
            for item, lat, lon in (await self.session.execute(item_stmt)).all()
        }

        swipe_stmt = select(Swipe.swiper_item_id, Swipe.swiped_item_id, Swipe.liked).where(
            Swipe.created_at <= as_of
        )
        likes: set[tuple[str, str]] = set()
        passes: set[tuple[str, str]] = set()
        negative: set[tuple[str, str]] = set()
        for swiper, swiped, liked in (await self.session.execute(swipe_stmt)).all():
            if liked:
                likes.add((str(swiper), str(swiped)))
            else:
                passes.add((str(swiper), str(swiped)))
                negative.add(pair_key(str(swiper), str(swiped)))

        match_stmt = select(Match.item_a_id, Match.item_b_id).where(Match.created_at <= as_of)
        matches = {
            pair_key(str(a), str(b)) for a, b in (await self.session.execute(match_stmt)).all()
        }

        logger.info(
            "snapshot_loaded",
            as_of=as_of.isoformat(),
            items=len(items),
            likes=len(likes),
            negative_pairs=len(negative),
            matches=len(matches),
        )
        return GraphSnapshot(
            taken_at=as_of,
            items=items,
            likes=likes,
            passes=passes,
            negative_pairs=negative,
            match_pairs=matches,
        )

    # ── Opportunities ─────────────────────────────────────────────────────

    @_translate_errors
    async def insert_opportunity(self, record: OpportunityRecord) -> bool:
        """Insert an active opportunity; ``False`` if its set is already active."""
        stmt = (
            pg_insert(SwapOpportunity)
            .values(
                id=_uuid(record.id),
                cycle_type=record.cycle_type,
                participants=[p.as_dict() for p in record.participants],
                participant_key=record.participant_key,
                item_ids=[_uuid(i) for i in record.item_ids],
                user_ids=[_uuid(u) for u in record.user_ids],
                confidence_score=record.confidence_score,
                score_breakdown=record.score_breakdown,
                status=record.status,
                created_at=record.created_at,
                expires_at=record.expires_at,
            )
            .on_conflict_do_nothing(
                index_elements=["participant_key"],
                index_where=SwapOpportunity.status == STATUS_ACTIVE,
            )
            .returning(SwapOpportunity.id)
        )
        async with self.session.begin_nested():
            return (await self.session.execute(stmt)).first() is not None

    @_translate_errors
    async def get_opportunity(self, opportunity_id: str) -> OpportunityRecord | None:
        try:
            oid = _uuid(opportunity_id)
        except (TypeError, ValueError):
            return None
        row = await self.session.get(SwapOpportunity, oid)
        return _opportunity_record(row) if row is not None else None

    @_translate_errors
    async def list_active_for_user(self, user_id: str, now: datetime) -> list[OpportunityRecord]:
        """Active, unexpired opportunities involving the user and not hidden by them."""
        uid = _uuid(user_id)
        dismissed = (
            select(OpportunityDismissal.id)
            .where(
                OpportunityDismissal.opportunity_id == SwapOpportunity.id,
                OpportunityDismissal.user_id == uid,
            )
            .exists()
        )
        stmt = select(SwapOpportunity).where(
            SwapOpportunity.status == STATUS_ACTIVE,
            SwapOpportunity.expires_at > now,
            SwapOpportunity.user_ids.contains([uid]),
            ~dismissed,
        )
        rows = (await self.session.execute(stmt)).scalars()
        return [_opportunity_record(r) for r in rows]

    @_translate_errors
    async def list_active(self) -> list[OpportunityRecord]:
        stmt = select(SwapOpportunity).where(SwapOpportunity.status == STATUS_ACTIVE)
        return [_opportunity_record(r) for r in (await self.session.execute(stmt)).scalars()]

    @_translate_errors
    async def active_touching(self, item_ids: Iterable[str]) -> list[OpportunityRecord]:
        """Active opportunities with at least one participant item in ``item_ids``."""
        ids = _parse_ids(item_ids)
        if not ids:
            return []
        stmt = select(SwapOpportunity).where(
            SwapOpportunity.status == STATUS_ACTIVE,
            SwapOpportunity.item_ids.overlap(ids),
        )
        return [_opportunity_record(r) for r in (await self.session.execute(stmt)).scalars()]

    @_translate_errors
    async def transition(
        self, opportunity_id: str, to_status: str, at: datetime, reason: str | None = None
    ) -> bool:
        """Move an *active* opportunity to a terminal status.

        Returns ``False`` when the row was no longer active.
        """
        stmt = (
            update(SwapOpportunity)
            .where(
                SwapOpportunity.id == _uuid(opportunity_id),
                SwapOpportunity.status == STATUS_ACTIVE,
            )
            .values(status=to_status, closed_reason=reason, updated_at=at)
            .returning(SwapOpportunity.id)
        )
        return (await self.session.execute(stmt)).first() is not None

    # ── Dismissals ────────────────────────────────────────────────────────

    @_translate_errors
    async def add_dismissal(
        self, opportunity_id: str, user_id: str, participant_key: str, at: datetime
    ) -> bool:
        stmt = (
            pg_insert(OpportunityDismissal)
            .values(
                id=uuid.uuid4(),
                opportunity_id=_uuid(opportunity_id),
                user_id=_uuid(user_id),
                participant_key=participant_key,
                created_at=at,
            )
            .on_conflict_do_nothing(constraint="uq_dismissal_user")
            .returning(OpportunityDismissal.id)
        )
        return (await self.session.execute(stmt)).first() is not None

    @_translate_errors
    async def dismissed_user_ids(self, opportunity_id: str) -> set[str]:
        stmt = select(OpportunityDismissal.user_id).where(
            OpportunityDismissal.opportunity_id == _uuid(opportunity_id)
        )
        return {str(u) for u in (await self.session.execute(stmt)).scalars()}

    @_translate_errors
    async def has_recent_dismissal(self, participant_key: str, since: datetime) -> bool:
        stmt = select(
            select(OpportunityDismissal.id)
            .where(
                OpportunityDismissal.participant_key == participant_key,
                OpportunityDismissal.created_at > since,
            )
            .exists()
        )
        return bool((await self.session.execute(stmt)).scalar())


# ── Unit-of-work factory ──────────────────────────────────────────────────────

StoreFactory = Callable[[], AsyncContextManager[SqlGraphStore]]


@asynccontextmanager
async def sql_store_scope() -> AsyncIterator[SqlGraphStore]:
    """Open a store over a fresh session; commits when the block exits cleanly."""
    try:
        async with session_scope() as session:
            yield SqlGraphStore(session)
    except _TRANSIENT_ERRORS as exc:
        # Commit-time failures surface here rather than inside a store method.
        logger.warning("store_commit_failed", error=str(exc))
        raise TransientStoreError("Graph store commit failed") from exc
