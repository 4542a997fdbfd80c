"""Unit tests for OpportunityService — commit, listing, dismissal and maintenance."""
import pytest
import pytest_asyncio

from app.config import EngineConfig
from app.services.event_service import (
    OPPORTUNITY_CONVERTED,
    OPPORTUNITY_CREATED,
    OPPORTUNITY_DISMISSED,
    OPPORTUNITY_EXPIRED,
)
from app.services.graph import (
    STATUS_ACTIVE,
    STATUS_CONVERTED,
    STATUS_DISMISSED,
    STATUS_EXPIRED,
    OpportunityRecord,
    Participant,
)
from app.services.opportunity_service import (
    ALREADY_ACTIVE,
    CREATED,
    DISMISS_ALREADY_TERMINAL,
    DISMISS_NOT_FOUND,
    DISMISS_SUCCESS,
    DROPPED,
    SUPPRESSED,
    OpportunityService,
)
from app.utils.errors import ConflictError, NotFoundError, ValidationError
from tests.fakes import T0, days


def _record(opportunity_id, pairs, confidence, expires_in=days(7)):
    return OpportunityRecord(
        id=opportunity_id,
        cycle_type="3-way" if len(pairs) == 3 else "2-way",
        participants=tuple(Participant(user, item) for user, item in pairs),
        confidence_score=confidence,
        status=STATUS_ACTIVE,
        created_at=T0,
        expires_at=T0 + expires_in,
    )


@pytest.fixture
def candidate(three_cycle, cycle_engine, now):
    (found,) = cycle_engine.discover(three_cycle.snapshot(now), now)
    return found


@pytest_asyncio.fixture
async def committed(candidate, opportunity_service, graph, now):
    assert await opportunity_service.commit_candidate(candidate, now) == CREATED
    (record,) = graph.active_opportunities()
    return record


class TestCommitCandidate:

    @pytest.mark.asyncio
    async def test_created_then_already_active(self, candidate, opportunity_service, graph, publisher, now):
        assert await opportunity_service.commit_candidate(candidate, now) == CREATED
        assert await opportunity_service.commit_candidate(candidate, now) == ALREADY_ACTIVE

        (record,) = graph.active_opportunities()
        assert record.participant_key == candidate.participant_key
        assert record.expires_at == now + days(7)
        assert set(record.score_breakdown) >= {"category", "confidence"}
        assert publisher.types() == [OPPORTUNITY_CREATED]
        assert set(publisher.events[0].user_ids) == {"U1", "U2", "U3"}

    @pytest.mark.asyncio
    async def test_degenerate_candidate_dropped(self, candidate, opportunity_service, graph, now):
        graph.deactivate("I2")
        assert await opportunity_service.commit_candidate(candidate, now) == DROPPED
        assert graph.opportunities == {}

    @pytest.mark.asyncio
    async def test_matched_participant_dropped(self, candidate, opportunity_service, graph, now):
        graph.add_item("X", "U9", "games", ["books"])
        graph.add_match("I1", "X")
        assert await opportunity_service.commit_candidate(candidate, now) == DROPPED

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, candidate, opportunity_service, graph, now):
        graph.fail("insert_opportunity", 2)
        assert await opportunity_service.commit_candidate(candidate, now) == CREATED
        assert graph.calls["insert_opportunity"] == 3

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_already_active(self, candidate, opportunity_service, graph, publisher, now):
        graph.fail("insert_opportunity", error=ConflictError)
        assert await opportunity_service.commit_candidate(candidate, now) == ALREADY_ACTIVE
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_persistent_failure_drops_candidate(self, candidate, opportunity_service, graph, publisher, now):
        graph.fail("insert_opportunity", 3)
        assert await opportunity_service.commit_candidate(candidate, now) == DROPPED
        assert graph.opportunities == {}
        assert publisher.events == []

    @pytest.mark.asyncio
    async def test_suppressed_during_cooldown(self, candidate, opportunity_service, graph, committed, now):
        await opportunity_service.dismiss(committed.id, "U1", scope="all", now=now)

        assert await opportunity_service.commit_candidate(candidate, now + days(0.5)) == SUPPRESSED
        assert await opportunity_service.commit_candidate(candidate, now + days(2)) == CREATED
        assert len(graph.active_opportunities()) == 1

    @pytest.mark.asyncio
    async def test_zero_cooldown_never_suppresses(self, candidate, graph, publisher, committed, now):
        service = OpportunityService(
            EngineConfig(dismissal_cooldown_hours=0, write_retry_base_seconds=0.0),
            store_factory=graph.scope,
            publisher=publisher,
        )
        await service.dismiss(committed.id, "U1", scope="all", now=now)
        assert await service.commit_candidate(candidate, now) == CREATED


class TestListing:

    @pytest.mark.asyncio
    async def test_enriched_for_viewer(self, opportunity_service, committed, now):
        (view,) = await opportunity_service.list_for_user("U1", now)

        assert view.record.id == committed.id
        by_user = {p.user_id: p for p in view.participants}
        assert by_user["U1"].is_mine is True
        assert by_user["U2"].is_mine is False
        assert by_user["U1"].display_name == "Ada"
        assert by_user["U1"].avatar_url == "https://cdn.example/ada.png"
        assert by_user["U1"].item_photo == "https://cdn.example/i1.jpg"
        assert by_user["U1"].item_category == "books"
        assert by_user["U2"].item_photo is None

    @pytest.mark.asyncio
    async def test_not_listed_for_outsider_or_after_expiry(self, opportunity_service, committed, now):
        assert await opportunity_service.list_for_user("U9", now) == []
        assert await opportunity_service.list_for_user("U1", now + days(8)) == []

    @pytest.mark.asyncio
    async def test_hidden_once_participant_inactive(self, opportunity_service, graph, committed, now):
        graph.deactivate("I2")

        assert await opportunity_service.list_for_user("U1", now) == []
        assert graph.opportunities[committed.id].status == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_hidden_once_participant_matched_elsewhere(self, opportunity_service, graph, committed, now):
        graph.add_item("X9", "U9", "games", ["books"])
        graph.add_match("I1", "X9")

        assert await opportunity_service.list_for_user("U2", now) == []

    @pytest.mark.asyncio
    async def test_hidden_when_participant_missing(self, graph, publisher, now):
        graph.add_item("A0", "U1", "books", ["games"])
        graph.opportunities["gone"] = _record("gone", [("U1", "A0"), ("V0", "B0")], 0.8)
        service = OpportunityService(EngineConfig(), store_factory=graph.scope, publisher=publisher)

        assert await service.list_for_user("U1", now) == []

    @pytest.mark.asyncio
    async def test_sorted_and_capped(self, graph, publisher, now):
        for n in range(4):
            graph.add_item(f"A{n}", "U1", "books", ["games"])
            graph.add_item(f"B{n}", f"V{n}", "games", ["books"])
        graph.opportunities.update({
            "low": _record("low", [("U1", "A0"), ("V0", "B0")], 0.4),
            "high": _record("high", [("U1", "A1"), ("V1", "B1")], 0.9),
            "mid": _record("mid", [("U1", "A2"), ("V2", "B2")], 0.6),
            "mid-older": _record("mid-older", [("U1", "A3"), ("V3", "B3")], 0.6),
        })
        graph.add_item("B3", "V3", "games", ["books"], created_at=T0 - days(3))
        service = OpportunityService(
            EngineConfig(list_limit=3), store_factory=graph.scope, publisher=publisher
        )

        views = await service.list_for_user("U1", now)

        assert [v.record.id for v in views] == ["high", "mid-older", "mid"]
        # One bulk lookup each, however many opportunities are listed.
        assert graph.calls["get_items"] == 1
        assert graph.calls["get_profiles"] == 1
        assert {p.display_name for v in views for p in v.participants} == {"U1", "V1", "V2", "V3"}

    @pytest.mark.asyncio
    async def test_get_requires_participant(self, opportunity_service, committed):
        view = await opportunity_service.get(committed.id, "U2")
        assert view.record.id == committed.id

        with pytest.raises(NotFoundError):
            await opportunity_service.get(committed.id, "U9")
        with pytest.raises(NotFoundError):
            await opportunity_service.get("missing")


class TestDismiss:

    @pytest.mark.asyncio
    async def test_self_scope_hides_only_for_requester(self, opportunity_service, graph, committed, now):
        assert await opportunity_service.dismiss(committed.id, "U1", now=now) == DISMISS_SUCCESS

        assert graph.opportunities[committed.id].status == STATUS_ACTIVE
        assert await opportunity_service.list_for_user("U1", now) == []
        assert len(await opportunity_service.list_for_user("U2", now)) == 1

    @pytest.mark.asyncio
    async def test_dismissed_once_every_participant_dismisses(
        self, opportunity_service, graph, publisher, committed, now
    ):
        for user in ("U1", "U2", "U3"):
            assert await opportunity_service.dismiss(committed.id, user, now=now) == DISMISS_SUCCESS

        closed = graph.opportunities[committed.id]
        assert closed.status == STATUS_DISMISSED
        assert closed.closed_reason == "dismissed_by_all"
        assert publisher.types() == [OPPORTUNITY_CREATED, OPPORTUNITY_DISMISSED]

    @pytest.mark.asyncio
    async def test_all_scope_dismisses_for_everyone(self, opportunity_service, graph, committed, now):
        assert await opportunity_service.dismiss(committed.id, "U2", scope="all", now=now) == DISMISS_SUCCESS
        assert graph.opportunities[committed.id].status == STATUS_DISMISSED
        assert await opportunity_service.list_for_user("U3", now) == []

    @pytest.mark.asyncio
    async def test_dismiss_twice_is_success(self, opportunity_service, graph, committed, now):
        assert await opportunity_service.dismiss(committed.id, "U1", now=now) == DISMISS_SUCCESS
        assert await opportunity_service.dismiss(committed.id, "U1", now=now) == DISMISS_SUCCESS
        assert len(graph.dismissals) == 1

    @pytest.mark.asyncio
    async def test_not_found(self, opportunity_service, committed, now):
        assert await opportunity_service.dismiss("missing", "U1", now=now) == DISMISS_NOT_FOUND
        assert await opportunity_service.dismiss(committed.id, "U9", now=now) == DISMISS_NOT_FOUND

    @pytest.mark.asyncio
    async def test_terminal_opportunity(self, opportunity_service, graph, committed, now):
        await opportunity_service.dismiss(committed.id, "U1", scope="all", now=now)
        assert await opportunity_service.dismiss(committed.id, "U2", now=now) == DISMISS_ALREADY_TERMINAL

    @pytest.mark.asyncio
    async def test_past_expiry_is_terminal(self, opportunity_service, committed, now):
        result = await opportunity_service.dismiss(committed.id, "U1", now=now + days(8))
        assert result == DISMISS_ALREADY_TERMINAL

    @pytest.mark.asyncio
    async def test_unknown_scope(self, opportunity_service, committed, now):
        with pytest.raises(ValidationError) as exc:
            await opportunity_service.dismiss(committed.id, "U1", scope="everyone", now=now)
        assert exc.value.reason == "malformed"


class TestMaintenance:

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, opportunity_service, graph, publisher, committed, now):
        later = now + days(7)
        result = await opportunity_service.run_maintenance(graph.snapshot(later), later)

        assert (result.expired, result.converted, result.degenerate) == (1, 0, 0)
        assert graph.opportunities[committed.id].status == STATUS_EXPIRED
        assert graph.opportunities[committed.id].closed_reason == "ttl"
        assert publisher.types()[-1] == OPPORTUNITY_EXPIRED

    @pytest.mark.asyncio
    async def test_matched_participants_convert(self, opportunity_service, graph, publisher, committed, now):
        graph.add_match("I1", "I3")
        result = await opportunity_service.run_maintenance(graph.snapshot(now), now)

        assert result.converted == 1
        assert graph.opportunities[committed.id].status == STATUS_CONVERTED
        assert publisher.types()[-1] == OPPORTUNITY_CONVERTED

    @pytest.mark.asyncio
    async def test_unavailable_participant_expires(self, opportunity_service, graph, committed, now):
        graph.deactivate("I3")
        result = await opportunity_service.run_maintenance(graph.snapshot(now), now)

        assert result.degenerate == 1
        assert graph.opportunities[committed.id].closed_reason == "degenerate"

    @pytest.mark.asyncio
    async def test_healthy_opportunity_untouched(self, opportunity_service, graph, committed, now):
        result = await opportunity_service.run_maintenance(graph.snapshot(now), now)
        assert (result.expired, result.converted, result.degenerate) == (0, 0, 0)
        assert graph.opportunities[committed.id].status == STATUS_ACTIVE

    @pytest.mark.asyncio
    async def test_retries_transient_failure(self, opportunity_service, graph, committed, now):
        graph.fail("transition")
        later = now + days(8)
        result = await opportunity_service.run_maintenance(graph.snapshot(later), later)
        assert result.expired == 1
