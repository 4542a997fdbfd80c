"""
Swapmatch — Mutual-Match Detector (online swipe path)

``record_swipe`` validates and stores one directed swipe and, for a like,
creates the Match for the unordered item pair as soon as the reciprocal like
exists.  Everything happens in a single transaction that first takes the
pair's advisory lock, so two near-simultaneous reciprocal likes are
serialised: whichever commits second sees the first swipe and creates the
Match.  The Match insert is itself conditional on the canonical pair, so even
without the lock a lost race yields no second row.

A new Match also closes every active opportunity touching either item: those
holding both items are converted, the rest lose a participant and expire as
degenerate.  Events are published only after the transaction commits.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from app.services.event_service import (
    MATCH_CREATED,
    OPPORTUNITY_CONVERTED,
    OPPORTUNITY_EXPIRED,
    EventPublisher,
    SwapEvent,
    get_publisher,
)
from app.services.graph import STATUS_CONVERTED, STATUS_EXPIRED, MatchRecord, OpportunityRecord
from app.services.graph_store import StoreFactory, sql_store_scope
from app.utils.errors import ValidationError

logger = structlog.get_logger("swapmatch.swipe_service")


@dataclass(frozen=True)
class SwipeResult:
    swipe_id: str | None
    match_created: bool
    match_id: str | None = None
    converted_opportunity_ids: tuple[str, ...] = ()
    expired_opportunity_ids: tuple[str, ...] = ()


class SwipeService:
    """Records swipes and turns reciprocal likes into exactly one Match."""

    def __init__(
        self,
        store_factory: StoreFactory = sql_store_scope,
        publisher: EventPublisher | None = None,
    ) -> None:
        self._store_factory = store_factory
        self._publisher = publisher

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher or get_publisher()

    async def record_swipe(
        self,
        swiping_item_id: str,
        swiped_item_id: str,
        liked: bool,
        acting_user_id: str | None = None,
        now: datetime | None = None,
    ) -> SwipeResult:
        """Store a swipe and detect a mutual match.

        Parameters
        ----------
        swiping_item_id:
            The item whose owner is swiping.
        swiped_item_id:
            The item being swiped on.
        liked:
            ``True`` for a like, ``False`` for a pass.  Passes are stored
            (they remove the pair from cycle discovery) but never create a
            Match.
        acting_user_id:
            When given, must own ``swiping_item_id``.

        Returns
        -------
        SwipeResult
            ``match_created`` is ``True`` only for the call that created the
            Match.  Replaying an identical like on an already matched pair
            returns ``match_created=False`` with the existing ``match_id``.

        Raises
        ------
        ValidationError
            ``malformed``, ``self_swipe``, ``invalid_source``,
            ``invalid_target``, ``not_owner`` or ``duplicate_swipe``.  No
            state is changed.
        TransientStoreError
            The store could not complete the transaction; the caller may retry.
        """
        if not swiping_item_id or not swiped_item_id or not isinstance(liked, bool):
            raise ValidationError("malformed", "swiping_item_id, swiped_item_id and liked are required")
        swiping_item_id, swiped_item_id = str(swiping_item_id), str(swiped_item_id)
        if swiping_item_id == swiped_item_id:
            raise ValidationError("self_swipe", "An item cannot swipe on itself")

        now = now or datetime.now(timezone.utc)
        log = logger.bind(swiper=swiping_item_id, swiped=swiped_item_id, liked=liked)

        match: MatchRecord | None = None
        match_created = False
        converted: list[OpportunityRecord] = []
        expired: list[OpportunityRecord] = []
        owners: tuple[str, str] = ("", "")

        async with self._store_factory() as store:
            await store.pair_lock(swiping_item_id, swiped_item_id)

            items = await store.get_items([swiping_item_id, swiped_item_id])
            source = items.get(swiping_item_id)
            target = items.get(swiped_item_id)
            if source is None or not source.is_active:
                raise ValidationError("invalid_source", "Swiping item does not exist or is inactive")
            if target is None or not target.is_active:
                raise ValidationError("invalid_target", "Swiped item does not exist or is inactive")
            if acting_user_id is not None and str(acting_user_id) != source.owner_id:
                raise ValidationError("not_owner", "Swiping item is not owned by the acting user")
            if source.owner_id == target.owner_id:
                raise ValidationError("self_swipe", "Both items belong to the same user")
            owners = (source.owner_id, target.owner_id)

            swipe = await store.insert_swipe(swiping_item_id, swiped_item_id, liked, now)
            if swipe is None:
                previous = await store.get_swipe(swiping_item_id, swiped_item_id)
                if liked and previous is not None and previous.liked:
                    existing = await store.get_match(swiping_item_id, swiped_item_id)
                    if existing is not None:
                        log.info("swipe_replayed_on_match", match_id=existing.id)
                        return SwipeResult(
                            swipe_id=previous.id, match_created=False, match_id=existing.id
                        )
                raise ValidationError("duplicate_swipe", "This pair has already been swiped")

            if liked:
                reciprocal = await store.get_swipe(swiped_item_id, swiping_item_id)
                if reciprocal is not None and reciprocal.liked:
                    match, match_created = await store.insert_match(
                        swiping_item_id, swiped_item_id, now
                    )
                    if match_created:
                        converted, expired = await self._close_opportunities(
                            store, swiping_item_id, swiped_item_id, now
                        )

        log.info(
            "swipe_recorded",
            swipe_id=swipe.id,
            match_created=match_created,
            match_id=match.id if match else None,
        )

        if match_created:
            await self._publish(match, owners, converted, expired)

        return SwipeResult(
            swipe_id=swipe.id,
            match_created=match_created,
            match_id=match.id if match else None,
            converted_opportunity_ids=tuple(o.id for o in converted),
            expired_opportunity_ids=tuple(o.id for o in expired),
        )

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    async def _close_opportunities(store, item_a_id: str, item_b_id: str, now: datetime):
        converted, expired = [], []
        for opportunity in await store.active_touching([item_a_id, item_b_id]):
            if {item_a_id, item_b_id} <= set(opportunity.item_ids):
                if await store.transition(opportunity.id, STATUS_CONVERTED, now, "matched"):
                    converted.append(opportunity)
            elif await store.transition(opportunity.id, STATUS_EXPIRED, now, "degenerate"):
                expired.append(opportunity)
        return converted, expired

    async def _publish(
        self,
        match: MatchRecord,
        owners: tuple[str, str],
        converted: list[OpportunityRecord],
        expired: list[OpportunityRecord],
    ) -> None:
        events = [
            SwapEvent(
                type=MATCH_CREATED,
                user_ids=owners,
                payload={"match_id": match.id, "item_ids": list(match.item_ids)},
                occurred_at=match.created_at,
            )
        ]
        events.extend(
            SwapEvent(
                type=OPPORTUNITY_CONVERTED,
                user_ids=o.user_ids,
                payload={"opportunity_id": o.id, "match_id": match.id},
                occurred_at=match.created_at,
            )
            for o in converted
        )
        events.extend(
            SwapEvent(
                type=OPPORTUNITY_EXPIRED,
                user_ids=o.user_ids,
                payload={"opportunity_id": o.id, "reason": "degenerate"},
                occurred_at=match.created_at,
            )
            for o in expired
        )
        await self.publisher.publish_many(events)
