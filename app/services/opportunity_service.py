"""
Swapmatch — Opportunity Lifecycle Manager

State machine per SwapOpportunity::

    active ──TTL elapsed──────────────────────> expired   (reason "ttl")
    active ──participant inactive / matched──> expired   (reason "degenerate")
    active ──Match among two participants────> converted (reason "matched")
    active ──dismissed (scope all, or by all)─> dismissed

Every transition is a conditional update on ``status = 'active'``; terminal
rows are never touched again.

Candidates coming out of the Cycle Discovery Engine are committed one at a
time, each in its own transaction with bounded exponential-backoff retries
(tenacity).  Before writing, a candidate is re-validated against current
item state and checked against the dismissal cool-down; the insert itself
is conditional on the partial unique index over active participant sets.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from itertools import combinations

import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from app.config import EngineConfig
from app.services.cycle_service import Candidate
from app.services.event_service import (
    OPPORTUNITY_CONVERTED,
    OPPORTUNITY_CREATED,
    OPPORTUNITY_DISMISSED,
    OPPORTUNITY_EXPIRED,
    EventPublisher,
    SwapEvent,
    get_publisher,
)
from app.services.graph import (
    STATUS_ACTIVE,
    STATUS_CONVERTED,
    STATUS_DISMISSED,
    STATUS_EXPIRED,
    GraphSnapshot,
    ItemNode,
    OpportunityRecord,
)
from app.services.graph_store import StoreFactory, sql_store_scope
from app.services.profile_service import OpportunityView, ProfileService
from app.utils.errors import (
    ConflictError,
    DegenerateCandidateError,
    NotFoundError,
    TransientStoreError,
    ValidationError,
)

logger = structlog.get_logger("swapmatch.opportunity_service")

# Candidate commit outcomes
CREATED = "created"
ALREADY_ACTIVE = "already_active"
SUPPRESSED = "suppressed"
DROPPED = "dropped"

# Dismissal outcomes
DISMISS_SUCCESS = "success"
DISMISS_NOT_FOUND = "not_found"
DISMISS_ALREADY_TERMINAL = "already_terminal"

DISMISS_SCOPES = ("self", "all")

_EVENT_FOR_STATUS = {
    STATUS_EXPIRED: OPPORTUNITY_EXPIRED,
    STATUS_CONVERTED: OPPORTUNITY_CONVERTED,
    STATUS_DISMISSED: OPPORTUNITY_DISMISSED,
}


@dataclass
class MaintenanceResult:
    expired: int = 0
    converted: int = 0
    degenerate: int = 0


def _transition_event(record: OpportunityRecord, status: str, at: datetime, reason: str | None) -> SwapEvent:
    return SwapEvent(
        type=_EVENT_FOR_STATUS[status],
        user_ids=record.user_ids,
        payload={"opportunity_id": record.id, "reason": reason},
        occurred_at=at,
    )


class OpportunityService:
    """Persists, lists, dismisses and ages out SwapOpportunities."""

    def __init__(
        self,
        config: EngineConfig,
        store_factory: StoreFactory = sql_store_scope,
        publisher: EventPublisher | None = None,
        profile_service: ProfileService | None = None,
    ) -> None:
        self.config = config
        self._store_factory = store_factory
        self._publisher = publisher
        self.profiles = profile_service or ProfileService()

    @property
    def publisher(self) -> EventPublisher:
        return self._publisher or get_publisher()

    # ══════════════════════════════════════════════════════════════════
    # Read side
    # ══════════════════════════════════════════════════════════════════

    async def list_for_user(self, user_id: str, now: datetime | None = None) -> list[OpportunityView]:
        """Active opportunities for a user, best first, capped.

        Order: confidence desc, then older listing, then lower item id.
        Opportunities the user dismissed for themselves are hidden, as are
        those with a participant item that is gone, inactive or matched.
        """
        now = now or datetime.now(timezone.utc)
        async with self._store_factory() as store:
            records = await store.list_active_for_user(str(user_id), now)
            item_ids = {i for r in records for i in r.item_ids}
            items = await store.get_items(item_ids)
            matched = await store.matched_item_ids(item_ids) if item_ids else set()
            records = [r for r in records if self._listable(r, items, matched)]

            records.sort(key=lambda r: self._listing_sort_key(r, items))
            records = records[: self.config.list_limit]
            views = await self.profiles.enrich(store, records, viewer_id=str(user_id), items=items)

        logger.info("opportunities_listed", user_id=str(user_id), count=len(views))
        return views

    async def get(self, opportunity_id: str, user_id: str | None = None) -> OpportunityView:
        async with self._store_factory() as store:
            record = await store.get_opportunity(str(opportunity_id))
            if record is None or (user_id is not None and str(user_id) not in record.user_ids):
                raise NotFoundError(
                    "Opportunity not found",
                    details={"opportunity_id": str(opportunity_id)},
                )
            views = await self.profiles.enrich(store, [record], viewer_id=user_id)
        return views[0]

    @staticmethod
    def _listable(record: OpportunityRecord, items: dict[str, ItemNode], matched: set[str]) -> bool:
        for item_id in record.item_ids:
            item = items.get(item_id)
            if item is None or not item.is_active or item_id in matched:
                return False
        return True

    @staticmethod
    def _listing_sort_key(record: OpportunityRecord, items: dict[str, ItemNode]) -> tuple:
        listed = [items[i].created_at for i in record.item_ids if i in items]
        oldest = min(listed) if listed else record.created_at
        return (-record.confidence_score, oldest, tuple(sorted(record.item_ids)))

    # ══════════════════════════════════════════════════════════════════
    # Dismissal
    # ══════════════════════════════════════════════════════════════════

    async def dismiss(
        self,
        opportunity_id: str,
        user_id: str,
        scope: str = "self",
        now: datetime | None = None,
    ) -> str:
        """Dismiss an opportunity on behalf of one participant.

        ``scope="self"`` hides it for the requester only; the opportunity
        becomes ``dismissed`` once every participant has dismissed it.
        ``scope="all"`` dismisses it for everyone immediately.  Either way
        the participant set enters the re-surfacing cool-down.

        Returns ``success``, ``not_found`` (unknown id or the user is not a
        participant) or ``already_terminal``.  Dismissing twice succeeds.
        """
        if scope not in DISMISS_SCOPES:
            raise ValidationError("malformed", f"scope must be one of {DISMISS_SCOPES}")

        now = now or datetime.now(timezone.utc)
        user_id = str(user_id)
        log = logger.bind(opportunity_id=str(opportunity_id), user_id=user_id, scope=scope)

        closed: OpportunityRecord | None = None
        async with self._store_factory() as store:
            record = await store.get_opportunity(str(opportunity_id))
            if record is None or user_id not in record.user_ids:
                log.info("dismiss_not_found")
                return DISMISS_NOT_FOUND
            if not record.is_active or record.expires_at <= now:
                log.info("dismiss_already_terminal", status=record.status)
                return DISMISS_ALREADY_TERMINAL

            await store.add_dismissal(record.id, user_id, record.participant_key, now)
            dismissed_by = await store.dismissed_user_ids(record.id)

            if scope == "all" or set(record.user_ids) <= dismissed_by:
                reason = "dismissed_for_all" if scope == "all" else "dismissed_by_all"
                if await store.transition(record.id, STATUS_DISMISSED, now, reason):
                    closed = record

        log.info("opportunity_dismissed", closed=closed is not None)
        if closed is not None:
            await self.publisher.publish(
                _transition_event(closed, STATUS_DISMISSED, now, "dismissed")
            )
        return DISMISS_SUCCESS

    # ══════════════════════════════════════════════════════════════════
    # Maintenance pass
    # ══════════════════════════════════════════════════════════════════

    async def run_maintenance(self, snapshot: GraphSnapshot, now: datetime) -> MaintenanceResult:
        """Expire, convert or invalidate every active opportunity as needed.

        Checked in order: TTL elapsed, a Match between any two participants,
        any participant no longer available (inactive or matched elsewhere).
        """
        result = MaintenanceResult()
        events: list[SwapEvent] = []

        async for attempt in self._retrying():
            with attempt:
                result = MaintenanceResult()
                events = []
                async with self._store_factory() as store:
                    for record in await store.list_active():
                        decision = self._maintenance_decision(record, snapshot, now)
                        if decision is None:
                            continue
                        status, reason = decision
                        if not await store.transition(record.id, status, now, reason):
                            continue
                        if status == STATUS_CONVERTED:
                            result.converted += 1
                        elif reason == "degenerate":
                            result.degenerate += 1
                        else:
                            result.expired += 1
                        events.append(_transition_event(record, status, now, reason))

        logger.info(
            "maintenance_complete",
            expired=result.expired,
            converted=result.converted,
            degenerate=result.degenerate,
        )
        await self.publisher.publish_many(events)
        return result

    @staticmethod
    def _maintenance_decision(
        record: OpportunityRecord, snapshot: GraphSnapshot, now: datetime
    ) -> tuple[str, str] | None:
        if record.expires_at <= now:
            return STATUS_EXPIRED, "ttl"
        if any(snapshot.is_matched_pair(a, b) for a, b in combinations(record.item_ids, 2)):
            return STATUS_CONVERTED, "matched"
        if not all(snapshot.is_available(i) for i in record.item_ids):
            return STATUS_EXPIRED, "degenerate"
        return None

    # ══════════════════════════════════════════════════════════════════
    # Candidate commit
    # ══════════════════════════════════════════════════════════════════

    async def commit_candidate(self, candidate: Candidate, now: datetime) -> str:
        """Persist one candidate; returns its outcome.

        Transient store failures are retried a fixed number of times with
        exponential backoff, after which the candidate is dropped and
        logged.  A candidate whose participants became invalid is dropped
        silently.
        """
        log = logger.bind(participant_key=candidate.participant_key, cycle_type=candidate.cycle_type)
        outcome, record = DROPPED, None
        try:
            async for attempt in self._retrying():
                with attempt:
                    outcome, record = await self._commit_once(candidate, now)
        except DegenerateCandidateError as exc:
            log.debug("candidate_degenerate", reason=exc.message)
            return DROPPED
        except TransientStoreError as exc:
            log.warning(
                "opportunity_write_dropped",
                attempts=self.config.write_retry_attempts,
                error=exc.message,
            )
            return DROPPED

        if record is not None:
            log.info("opportunity_created", opportunity_id=record.id, confidence=record.confidence_score)
            await self.publisher.publish(
                SwapEvent(
                    type=OPPORTUNITY_CREATED,
                    user_ids=record.user_ids,
                    payload={
                        "opportunity_id": record.id,
                        "cycle_type": record.cycle_type,
                        "confidence_score": record.confidence_score,
                    },
                    occurred_at=now,
                )
            )
        else:
            log.debug("candidate_not_created", outcome=outcome)
        return outcome

    async def _commit_once(self, candidate: Candidate, now: datetime) -> tuple[str, OpportunityRecord | None]:
        async with self._store_factory() as store:
            await self._revalidate(store, candidate)

            cooldown = timedelta(hours=self.config.dismissal_cooldown_hours)
            if cooldown and await store.has_recent_dismissal(candidate.participant_key, now - cooldown):
                return SUPPRESSED, None

            record = OpportunityRecord(
                id=str(uuid.uuid4()),
                cycle_type=candidate.cycle_type,
                participants=candidate.participants,
                confidence_score=round(candidate.confidence, 6),
                status=STATUS_ACTIVE,
                created_at=now,
                expires_at=now + timedelta(hours=self.config.opportunity_ttl_hours),
                score_breakdown=candidate.breakdown.as_dict(),
            )
            try:
                inserted = await store.insert_opportunity(record)
            except ConflictError:
                inserted = False
            if not inserted:
                return ALREADY_ACTIVE, None
            return CREATED, record

    @staticmethod
    async def _revalidate(store, candidate: Candidate) -> None:
        item_ids = candidate.item_ids
        if len(set(item_ids)) != len(item_ids) or len(set(candidate.user_ids)) != len(item_ids):
            raise DegenerateCandidateError("Participants are not distinct")

        items = await store.get_items(item_ids)
        for participant in candidate.participants:
            item = items.get(participant.item_id)
            if item is None or not item.is_active:
                raise DegenerateCandidateError(f"Item {participant.item_id} is no longer active")
            if item.owner_id != participant.user_id:
                raise DegenerateCandidateError(f"Item {participant.item_id} changed owner")

        matched = await store.matched_item_ids(item_ids)
        if matched:
            raise DegenerateCandidateError(f"Items already matched: {sorted(matched)}")

    def _retrying(self) -> AsyncRetrying:
        base = self.config.write_retry_base_seconds
        return AsyncRetrying(
            retry=retry_if_exception_type(TransientStoreError),
            stop=stop_after_attempt(self.config.write_retry_attempts),
            wait=wait_exponential(multiplier=base, max=base * 8),
            reraise=True,
        )
