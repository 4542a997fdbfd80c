"""In-memory stand-ins for the graph store and event publisher.

``InMemoryGraph`` holds shared state; ``graph.scope()`` yields a
``FakeGraphStore`` unit of work with the same method surface and the same
conditional-insert semantics as ``SqlGraphStore``.  Every method yields to
the event loop once so concurrent callers genuinely interleave, and pair
locks are held until the unit of work exits.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from app.services.event_service import EventPublisher
from app.services.graph import (
    STATUS_ACTIVE,
    GraphSnapshot,
    ItemNode,
    MatchRecord,
    OpportunityRecord,
    SwipeRecord,
    UserProfile,
    pair_key,
)
from app.utils.errors import TransientStoreError

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryGraph:
    def __init__(self) -> None:
        self.users: dict[str, UserProfile] = {}
        self.items: dict[str, ItemNode] = {}
        self.swipes: dict[tuple[str, str], SwipeRecord] = {}
        self.matches: dict[tuple[str, str], MatchRecord] = {}
        self.opportunities: dict[str, OpportunityRecord] = {}
        self.dismissals: list[dict] = []
        self.failures: Counter[str] = Counter()
        self.failure_errors: dict[str, type[Exception]] = {}
        self.calls: Counter[str] = Counter()
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    # ── Seeding helpers ───────────────────────────────────────────────────

    def add_user(self, user_id: str, display_name: str | None = None, **kwargs) -> UserProfile:
        profile = UserProfile(id=user_id, display_name=display_name or user_id, **kwargs)
        self.users[user_id] = profile
        return profile

    def add_item(
        self,
        item_id: str,
        owner_id: str,
        category: str,
        wants: list[str] | tuple[str, ...],
        condition: str = "good",
        created_at: datetime = T0,
        **kwargs,
    ) -> ItemNode:
        if owner_id not in self.users:
            self.add_user(owner_id)
        title = kwargs.pop("title", f"{category} item {item_id}")
        item = ItemNode(
            id=item_id,
            owner_id=owner_id,
            category=category,
            condition=condition,
            desired_categories=frozenset(wants),
            created_at=created_at,
            title=title,
            **kwargs,
        )
        self.items[item_id] = item
        return item

    def deactivate(self, item_id: str) -> None:
        self.items[item_id] = replace(self.items[item_id], is_active=False)

    def add_swipe(self, swiper: str, swiped: str, liked: bool, at: datetime = T0) -> None:
        self.swipes[(swiper, swiped)] = SwipeRecord(str(uuid.uuid4()), swiper, swiped, liked, at)

    def add_match(self, a: str, b: str, at: datetime = T0) -> MatchRecord:
        lo, hi = pair_key(a, b)
        match = MatchRecord(id=str(uuid.uuid4()), item_a_id=lo, item_b_id=hi, created_at=at)
        self.matches[(lo, hi)] = match
        return match

    def fail(self, operation: str, times: int = 1, error: type[Exception] = TransientStoreError) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self.failures[operation] += times
        self.failure_errors[operation] = error

    def active_opportunities(self) -> list[OpportunityRecord]:
        return [o for o in self.opportunities.values() if o.status == STATUS_ACTIVE]

    def lock_for(self, a: str, b: str) -> asyncio.Lock:
        return self._locks.setdefault(pair_key(a, b), asyncio.Lock())

    def snapshot(self, as_of: datetime = T0) -> GraphSnapshot:
        swipes = [s for s in self.swipes.values() if s.created_at <= as_of]
        return GraphSnapshot(
            taken_at=as_of,
            items={
                i: item
                for i, item in self.items.items()
                if item.is_active and item.created_at <= as_of
            },
            likes={(s.swiper_item_id, s.swiped_item_id) for s in swipes if s.liked},
            passes={(s.swiper_item_id, s.swiped_item_id) for s in swipes if not s.liked},
            negative_pairs={pair_key(s.swiper_item_id, s.swiped_item_id) for s in swipes if not s.liked},
            match_pairs={k for k, m in self.matches.items() if m.created_at <= as_of},
        )

    # ── Unit of work ──────────────────────────────────────────────────────

    @asynccontextmanager
    async def scope(self):
        store = FakeGraphStore(self)
        try:
            yield store
        finally:
            store.release()


class FakeGraphStore:
    def __init__(self, graph: InMemoryGraph) -> None:
        self.graph = graph
        self._held: list[asyncio.Lock] = []

    def release(self) -> None:
        while self._held:
            self._held.pop().release()

    async def _enter(self, operation: str) -> None:
        self.graph.calls[operation] += 1
        await asyncio.sleep(0)
        if self.graph.failures[operation] > 0:
            self.graph.failures[operation] -= 1
            error = self.graph.failure_errors.get(operation, TransientStoreError)
            raise error(f"Graph store {operation} failed")

    # ── Locks ─────────────────────────────────────────────────────────────

    async def pair_lock(self, a: str, b: str) -> None:
        await self._enter("pair_lock")
        lock = self.graph.lock_for(a, b)
        await lock.acquire()
        self._held.append(lock)

    # ── Items & profiles ──────────────────────────────────────────────────

    async def get_items(self, item_ids) -> dict[str, ItemNode]:
        await self._enter("get_items")
        return {i: self.graph.items[i] for i in set(item_ids) if i in self.graph.items}

    async def get_profiles(self, user_ids) -> dict[str, UserProfile]:
        await self._enter("get_profiles")
        return {u: self.graph.users[u] for u in set(user_ids) if u in self.graph.users}

    # ── Swipes & matches ──────────────────────────────────────────────────

    async def insert_swipe(self, swiper, swiped, liked, at) -> SwipeRecord | None:
        await self._enter("insert_swipe")
        if (swiper, swiped) in self.graph.swipes:
            return None
        record = SwipeRecord(str(uuid.uuid4()), swiper, swiped, liked, at)
        self.graph.swipes[(swiper, swiped)] = record
        return record

    async def get_swipe(self, swiper, swiped) -> SwipeRecord | None:
        await self._enter("get_swipe")
        return self.graph.swipes.get((swiper, swiped))

    async def insert_match(self, a, b, at) -> tuple[MatchRecord, bool]:
        await self._enter("insert_match")
        key = pair_key(a, b)
        if key in self.graph.matches:
            return self.graph.matches[key], False
        return self.graph.add_match(a, b, at), True

    async def get_match(self, a, b) -> MatchRecord | None:
        await self._enter("get_match")
        return self.graph.matches.get(pair_key(a, b))

    async def matched_item_ids(self, item_ids) -> set[str]:
        await self._enter("matched_item_ids")
        matched = {i for pair in self.graph.matches for i in pair}
        return set(item_ids) & matched

    # ── Snapshot ──────────────────────────────────────────────────────────

    async def load_snapshot(self, as_of: datetime) -> GraphSnapshot:
        await self._enter("load_snapshot")
        return self.graph.snapshot(as_of)

    # ── Opportunities ─────────────────────────────────────────────────────

    async def insert_opportunity(self, record: OpportunityRecord) -> bool:
        await self._enter("insert_opportunity")
        if any(o.participant_key == record.participant_key for o in self.graph.active_opportunities()):
            return False
        self.graph.opportunities[record.id] = record
        return True

    async def get_opportunity(self, opportunity_id) -> OpportunityRecord | None:
        await self._enter("get_opportunity")
        return self.graph.opportunities.get(opportunity_id)

    async def list_active_for_user(self, user_id, now) -> list[OpportunityRecord]:
        await self._enter("list_active_for_user")
        hidden = {d["opportunity_id"] for d in self.graph.dismissals if d["user_id"] == user_id}
        return [
            o
            for o in self.graph.active_opportunities()
            if o.expires_at > now and user_id in o.user_ids and o.id not in hidden
        ]

    async def list_active(self) -> list[OpportunityRecord]:
        await self._enter("list_active")
        return self.graph.active_opportunities()

    async def active_touching(self, item_ids) -> list[OpportunityRecord]:
        await self._enter("active_touching")
        wanted = set(item_ids)
        return [o for o in self.graph.active_opportunities() if wanted & set(o.item_ids)]

    async def transition(self, opportunity_id, to_status, at, reason=None) -> bool:
        await self._enter("transition")
        current = self.graph.opportunities.get(opportunity_id)
        if current is None or current.status != STATUS_ACTIVE:
            return False
        self.graph.opportunities[opportunity_id] = current.with_status(to_status, at, reason)
        return True

    # ── Dismissals ────────────────────────────────────────────────────────

    async def add_dismissal(self, opportunity_id, user_id, participant_key, at) -> bool:
        await self._enter("add_dismissal")
        if any(
            d["opportunity_id"] == opportunity_id and d["user_id"] == user_id
            for d in self.graph.dismissals
        ):
            return False
        self.graph.dismissals.append({
            "opportunity_id": opportunity_id,
            "user_id": user_id,
            "participant_key": participant_key,
            "created_at": at,
        })
        return True

    async def dismissed_user_ids(self, opportunity_id) -> set[str]:
        await self._enter("dismissed_user_ids")
        return {d["user_id"] for d in self.graph.dismissals if d["opportunity_id"] == opportunity_id}

    async def has_recent_dismissal(self, participant_key, since) -> bool:
        await self._enter("has_recent_dismissal")
        return any(
            d["participant_key"] == participant_key and d["created_at"] > since
            for d in self.graph.dismissals
        )


class RecordingPublisher(EventPublisher):
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]


def days(n: float) -> timedelta:
    return timedelta(days=n)
