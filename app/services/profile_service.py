"""
Swapmatch — Profile lookup and opportunity enrichment

Opportunities store ids only.  Before an opportunity reaches a client, each
participant is resolved through the graph store into the item title, first
photo and category plus the owner's display name and avatar, and flagged
``is_mine`` for the viewing user.  Items or profiles that have since
disappeared degrade to empty fields rather than failing the listing.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from app.services.graph import ItemNode, OpportunityRecord, UserProfile

logger = structlog.get_logger("swapmatch.profile_service")


@dataclass(frozen=True)
class ParticipantView:
    user_id: str
    item_id: str
    display_name: str | None
    avatar_url: str | None
    item_title: str | None
    item_photo: str | None
    item_category: str | None
    is_mine: bool


@dataclass(frozen=True)
class OpportunityView:
    record: OpportunityRecord
    participants: tuple[ParticipantView, ...]


class ProfileService:
    """Resolves participant ids into client-facing details."""

    async def enrich(
        self,
        store,
        records: list[OpportunityRecord],
        viewer_id: str | None = None,
        items: dict[str, ItemNode] | None = None,
    ) -> list[OpportunityView]:
        """Build views for ``records`` with two bulk lookups."""
        if not records:
            return []

        if items is None:
            items = await store.get_items({i for r in records for i in r.item_ids})
        profiles = await store.get_profiles({u for r in records for u in r.user_ids})

        views = []
        for record in records:
            participants = tuple(
                self._participant_view(p.user_id, p.item_id, items, profiles, viewer_id)
                for p in record.participants
            )
            views.append(OpportunityView(record=record, participants=participants))

        logger.debug(
            "opportunities_enriched",
            count=len(views),
            missing_items=sum(1 for r in records for i in r.item_ids if i not in items),
        )
        return views

    @staticmethod
    def _participant_view(
        user_id: str,
        item_id: str,
        items: dict[str, ItemNode],
        profiles: dict[str, UserProfile],
        viewer_id: str | None,
    ) -> ParticipantView:
        item = items.get(item_id)
        profile = profiles.get(user_id)
        return ParticipantView(
            user_id=user_id,
            item_id=item_id,
            display_name=profile.display_name if profile else None,
            avatar_url=profile.avatar_url if profile else None,
            item_title=item.title if item else None,
            item_photo=item.photos[0] if item and item.photos else None,
            item_category=item.category if item else None,
            is_mine=viewer_id is not None and str(viewer_id) == user_id,
        )
