"""
Swapmatch — Preference graph value types.

Everything the engine reasons about is an immutable record keyed by id.
Opportunities and candidates hold item / user ids and resolve them through a
``GraphSnapshot`` (arena-and-index style); nothing here holds a live ORM
object, so derived views can never mutate source items.

Edge semantics: ``giver -> receiver`` exists when the receiver's owner would
accept the giver's category, i.e. ``giver.category in receiver.desired``.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from datetime import datetime

# ──────────────────────────────────────────────────────────────────────────────
# Fixed taxonomy
# ──────────────────────────────────────────────────────────────────────────────

CATEGORIES: tuple[str, ...] = (
    "games", "electronics", "clothes", "books", "home_garden", "sports", "other",
)

# Ordinal condition scale, best first.
CONDITIONS: tuple[str, ...] = ("new", "like_new", "good", "fair")

CONDITION_RANK: dict[str, int] = {c: i for i, c in enumerate(CONDITIONS)}

# Five-dimensional category embeddings; cosine similarity between two rows is
# the taxonomy closeness used when a category is not explicitly desired.
CATEGORY_EMBEDDINGS: dict[str, tuple[float, ...]] = {
    "electronics": (0.9, 0.1, 0.3, 0.2, 0.2),
    "clothes": (0.1, 0.9, 0.2, 0.3, 0.1),
    "books": (0.2, 0.1, 0.9, 0.1, 0.3),
    "games": (0.7, 0.1, 0.8, 0.4, 0.2),
    "sports": (0.2, 0.3, 0.1, 0.9, 0.2),
    "home_garden": (0.2, 0.1, 0.2, 0.1, 0.9),
    "other": (0.3, 0.3, 0.3, 0.3, 0.3),
}

CYCLE_TWO_WAY = "2-way"
CYCLE_THREE_WAY = "3-way"

STATUS_ACTIVE = "active"
STATUS_DISMISSED = "dismissed"
STATUS_EXPIRED = "expired"
STATUS_CONVERTED = "converted"

TERMINAL_STATUSES = frozenset({STATUS_DISMISSED, STATUS_EXPIRED, STATUS_CONVERTED})


def category_similarity(a: str, b: str) -> float:
    """Cosine similarity of two category embeddings (0 for unknown)."""
    if a == b:
        return 1.0
    va = CATEGORY_EMBEDDINGS.get(a)
    vb = CATEGORY_EMBEDDINGS.get(b)
    if va is None or vb is None:
        return 0.0
    dot = sum(x * y for x, y in zip(va, vb))
    norm = math.sqrt(sum(x * x for x in va)) * math.sqrt(sum(y * y for y in vb))
    return dot / norm if norm else 0.0


def pair_key(item_a_id: str, item_b_id: str) -> tuple[str, str]:
    """Canonical (lower, higher) ordering of an unordered item pair."""
    return (item_a_id, item_b_id) if item_a_id < item_b_id else (item_b_id, item_a_id)


def participant_key(item_ids) -> str:
    """Order-independent key of a participant item set."""
    return ":".join(sorted(item_ids))


# ──────────────────────────────────────────────────────────────────────────────
# Records
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ItemNode:
    id: str
    owner_id: str
    category: str
    condition: str
    desired_categories: frozenset[str]
    created_at: datetime
    is_active: bool = True
    value_min: float | None = None
    value_max: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    title: str = ""
    photos: tuple[str, ...] = ()

    @property
    def has_geo(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @property
    def has_value(self) -> bool:
        return self.value_min is not None

    def value_range(self) -> tuple[float, float] | None:
        if self.value_min is None:
            return None
        high = self.value_max if self.value_max is not None else self.value_min
        return (self.value_min, max(self.value_min, high))


@dataclass(frozen=True)
class SwipeRecord:
    id: str
    swiper_item_id: str
    swiped_item_id: str
    liked: bool
    created_at: datetime


@dataclass(frozen=True)
class MatchRecord:
    id: str
    item_a_id: str
    item_b_id: str
    created_at: datetime
    is_completed: bool = False
    completed_at: datetime | None = None

    @property
    def item_ids(self) -> tuple[str, str]:
        return (self.item_a_id, self.item_b_id)


@dataclass(frozen=True)
class Participant:
    user_id: str
    item_id: str

    def as_dict(self) -> dict[str, str]:
        return {"user_id": self.user_id, "item_id": self.item_id}


@dataclass(frozen=True)
class OpportunityRecord:
    """A persisted SwapOpportunity.

    ``participants`` is ordered so that each participant wants the next
    participant's item (the last wraps around to the first).
    """

    id: str
    cycle_type: str
    participants: tuple[Participant, ...]
    confidence_score: float
    status: str
    created_at: datetime
    expires_at: datetime
    score_breakdown: dict = field(default_factory=dict, compare=False)
    closed_reason: str | None = None
    updated_at: datetime | None = None

    @property
    def item_ids(self) -> tuple[str, ...]:
        return tuple(p.item_id for p in self.participants)

    @property
    def user_ids(self) -> tuple[str, ...]:
        return tuple(p.user_id for p in self.participants)

    @property
    def participant_key(self) -> str:
        return participant_key(self.item_ids)

    @property
    def is_active(self) -> bool:
        return self.status == STATUS_ACTIVE

    def with_status(
        self, status: str, at: datetime, reason: str | None = None
    ) -> "OpportunityRecord":
        return replace(self, status=status, updated_at=at, closed_reason=reason)


@dataclass
class GraphSnapshot:
    """Point-in-time read of the preference graph.

    ``likes`` holds directed (swiper, swiped) pairs with ``liked = True`` and
    ``passes`` the directed pairs with ``liked = False``;
    ``negative_pairs`` holds the canonical pair of every pass swipe in either
    direction.
    """

    taken_at: datetime
    items: dict[str, ItemNode] = field(default_factory=dict)
    likes: set[tuple[str, str]] = field(default_factory=set)
    passes: set[tuple[str, str]] = field(default_factory=set)
    negative_pairs: set[tuple[str, str]] = field(default_factory=set)
    match_pairs: set[tuple[str, str]] = field(default_factory=set)

    def __post_init__(self) -> None:
        self._matched_items: set[str] = {i for pair in self.match_pairs for i in pair}

    @property
    def matched_items(self) -> set[str]:
        return self._matched_items

    def is_matched_pair(self, a: str, b: str) -> bool:
        return pair_key(a, b) in self.match_pairs

    def has_negative_swipe(self, a: str, b: str) -> bool:
        return pair_key(a, b) in self.negative_pairs

    def active_listing_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.items.values():
            if item.is_active:
                counts[item.owner_id] = counts.get(item.owner_id, 0) + 1
        return counts

    def is_available(self, item_id: str) -> bool:
        """Active and not already part of any Match."""
        item = self.items.get(item_id)
        return item is not None and item.is_active and item_id not in self._matched_items


@dataclass(frozen=True)
class UserProfile:
    """Owner details used for geo fallback and listing enrichment."""

    id: str
    display_name: str
    avatar_url: str | None = None
    latitude: float | None = None
    longitude: float | None = None
