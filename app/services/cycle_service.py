"""
Swapmatch — Cycle Discovery Engine

Finds exchange candidates in the preference graph that reciprocal swiping
cannot express on its own:

  3-way  item_1 -> item_2 -> item_3 -> item_1 across three distinct users
  2-way  two items whose owners each accept the other's category

Search pipeline (pure, CPU-bound, safe to run in worker threads):
  1. Eligibility: item active, not referenced by any Match, owner within the
     active-listing cap.
  2. Edge pre-filter: receiver desires giver's category, no pass swipe in
     either direction, widened value ranges overlap, distance under the
     radius when both sides have geo.
  3. Top-K: each giver keeps its K best outgoing edges by edge confidence,
     ties broken by older receiver listing, then lower receiver id.
  4. Depth-3 search: each cycle is emitted only from its smallest item id
     (the anchor), so sharding anchors across partitions never double
     counts a cycle, cross-category or not.  A 2-way pair is surfaced when
     either of its two edges survived top-K pruning.

Edge scores blend in per-owner category affinities learned once per index
from the snapshot's likes and passes.

A triple where any two members already form a Match or would qualify as a
direct 2-way swap is excluded; those pairs belong to the 2-way path.
"""

from __future__ import annotations

import zlib
from dataclasses import dataclass, field
from datetime import datetime
from itertools import combinations

import structlog

from app.config import EngineConfig
from app.services.graph import (
    CYCLE_THREE_WAY,
    CYCLE_TWO_WAY,
    GraphSnapshot,
    ItemNode,
    Participant,
    participant_key,
)
from app.services.scoring_service import ConfidenceScorer, ScoreBreakdown, learn_category_affinities

logger = structlog.get_logger("swapmatch.cycle_service")


@dataclass(frozen=True)
class Edge:
    giver_id: str
    receiver_id: str
    confidence: float


@dataclass(frozen=True)
class Candidate:
    """A scored, not yet persisted exchange opportunity.

    ``participants`` is in *wants* order: each participant wants the next
    participant's item, wrapping around.
    """

    cycle_type: str
    participants: tuple[Participant, ...]
    breakdown: ScoreBreakdown
    oldest_listing: datetime

    @property
    def confidence(self) -> float:
        return self.breakdown.confidence

    @property
    def item_ids(self) -> tuple[str, ...]:
        return tuple(p.item_id for p in self.participants)

    @property
    def user_ids(self) -> tuple[str, ...]:
        return tuple(p.user_id for p in self.participants)

    @property
    def participant_key(self) -> str:
        return participant_key(self.item_ids)

    def sort_key(self) -> tuple:
        """Higher confidence, then older listing, then lower item ids."""
        return (-self.confidence, self.oldest_listing, tuple(sorted(self.item_ids)))


@dataclass
class EdgeIndex:
    snapshot: GraphSnapshot
    now: datetime
    eligible: dict[str, ItemNode] = field(default_factory=dict)
    outgoing: dict[str, list[Edge]] = field(default_factory=dict)
    receivers: dict[str, frozenset[str]] = field(default_factory=dict)
    givers: dict[str, set[str]] = field(default_factory=dict)
    affinities: dict[tuple[str, str], float] = field(default_factory=dict)

    @property
    def edge_count(self) -> int:
        return sum(len(edges) for edges in self.outgoing.values())


class CycleDiscoveryEngine:
    """Bounded 2-way / 3-way candidate search over a graph snapshot."""

    def __init__(self, config: EngineConfig, scorer: ConfidenceScorer | None = None) -> None:
        self.config = config
        self.scorer = scorer or ConfidenceScorer(config)

    # ── Public API ────────────────────────────────────────────────────────

    def discover(self, snapshot: GraphSnapshot, now: datetime) -> list[Candidate]:
        """Single-threaded search over every partition."""
        index = self.build_index(snapshot, now)
        candidates: list[Candidate] = []
        for anchors in self.partition_anchors(index):
            candidates.extend(self.search_partition(index, anchors))
        candidates.sort(key=Candidate.sort_key)
        return candidates

    def build_index(self, snapshot: GraphSnapshot, now: datetime) -> EdgeIndex:
        """Apply eligibility + pre-filter and keep each giver's top-K edges."""
        eligible = self.eligible_items(snapshot)
        index = EdgeIndex(
            snapshot=snapshot,
            now=now,
            eligible=eligible,
            affinities=learn_category_affinities(snapshot),
        )

        wanting: dict[str, list[ItemNode]] = {}
        for item_id in sorted(eligible):
            item = eligible[item_id]
            for category in item.desired_categories:
                wanting.setdefault(category, []).append(item)

        k = self.config.top_k_edges
        for giver_id in sorted(eligible):
            giver = eligible[giver_id]
            scored: list[tuple[float, ItemNode]] = []
            for receiver in wanting.get(giver.category, ()):
                if not self.edge_allowed(snapshot, giver, receiver):
                    continue
                confidence = self.scorer.score_edge(giver, receiver, now, index.affinities).confidence
                scored.append((confidence, receiver))

            scored.sort(key=lambda e: (-e[0], e[1].created_at, e[1].id))
            edges = [Edge(giver_id, r.id, c) for c, r in scored[:k]]
            index.outgoing[giver_id] = edges
            index.receivers[giver_id] = frozenset(e.receiver_id for e in edges)
            for edge in edges:
                index.givers.setdefault(edge.receiver_id, set()).add(giver_id)

        logger.info(
            "edge_index_built",
            items_total=len(snapshot.items),
            items_eligible=len(eligible),
            edges=index.edge_count,
            top_k=k,
        )
        return index

    def partition_anchors(self, index: EdgeIndex) -> list[list[str]]:
        """Shard anchor items by a stable hash of their id."""
        n = self.config.partitions
        shards: list[list[str]] = [[] for _ in range(n)]
        for item_id in sorted(index.eligible):
            shards[zlib.crc32(item_id.encode("utf-8")) % n].append(item_id)
        return shards

    def search_partition(self, index: EdgeIndex, anchors: list[str]) -> list[Candidate]:
        """Find every candidate whose smallest item id is in ``anchors``."""
        snapshot = index.snapshot
        best: dict[str, Candidate] = {}

        def keep(candidate: Candidate) -> None:
            if candidate.confidence < self.config.min_confidence:
                return
            key = candidate.participant_key
            current = best.get(key)
            if current is None or candidate.sort_key() < current.sort_key():
                best[key] = candidate

        for a in sorted(anchors):
            if self.config.two_way_enabled:
                partners = index.receivers.get(a, frozenset()) | index.givers.get(a, set())
                for b in sorted(p for p in partners if p > a):
                    if self._is_two_way(index, a, b):
                        keep(self._build_candidate(index, CYCLE_TWO_WAY, [a, b]))

            for first in index.outgoing.get(a, ()):
                b = first.receiver_id
                if b <= a:
                    continue

                for second in index.outgoing.get(b, ()):
                    c = second.receiver_id
                    if c <= a or c == b:
                        continue
                    if a not in index.receivers.get(c, frozenset()):
                        continue
                    if self._is_excluded_triple(index, (a, b, c)):
                        continue
                    keep(self._build_candidate(index, CYCLE_THREE_WAY, [a, b, c]))

        return sorted(best.values(), key=Candidate.sort_key)

    # ── Eligibility & edge pre-filter ─────────────────────────────────────

    def eligible_items(self, snapshot: GraphSnapshot) -> dict[str, ItemNode]:
        counts = snapshot.active_listing_counts()
        cap = self.config.max_active_listings_per_user
        return {
            item_id: item
            for item_id, item in snapshot.items.items()
            if snapshot.is_available(item_id) and counts.get(item.owner_id, 0) <= cap
        }

    def edge_allowed(self, snapshot: GraphSnapshot, giver: ItemNode, receiver: ItemNode) -> bool:
        if giver.id == receiver.id or giver.owner_id == receiver.owner_id:
            return False
        if giver.category not in receiver.desired_categories:
            return False
        if snapshot.has_negative_swipe(giver.id, receiver.id):
            return False
        if not self.scorer.value_ranges_compatible(giver, receiver):
            return False
        distance = self.scorer.distance_km(giver, receiver)
        if distance is not None and distance > self.config.geo_radius_km:
            return False
        return True

    # ── Helpers ───────────────────────────────────────────────────────────

    def _mutually_desired(self, index: EdgeIndex, x: str, y: str) -> bool:
        item_x = index.eligible[x]
        item_y = index.eligible[y]
        return (
            self.edge_allowed(index.snapshot, item_x, item_y)
            and self.edge_allowed(index.snapshot, item_y, item_x)
        )

    def _is_two_way(self, index: EdgeIndex, a: str, b: str) -> bool:
        snapshot = index.snapshot
        if snapshot.is_matched_pair(a, b):
            return False
        # Reciprocal likes already belong to the Mutual-Match Detector.
        if (a, b) in snapshot.likes and (b, a) in snapshot.likes:
            return False
        return self._mutually_desired(index, a, b)

    def _is_excluded_triple(self, index: EdgeIndex, ids: tuple[str, str, str]) -> bool:
        items = [index.eligible[i] for i in ids]
        if len({item.owner_id for item in items}) != 3:
            return True
        for x, y in combinations(ids, 2):
            if index.snapshot.is_matched_pair(x, y) or self._mutually_desired(index, x, y):
                return True
        return False

    def _build_candidate(self, index: EdgeIndex, cycle_type: str, give_order: list[str]) -> Candidate:
        items = [index.eligible[i] for i in give_order]
        breakdown = self.scorer.score_cycle(items, index.now, index.affinities)

        # give_order[i] goes to the owner of give_order[i + 1], so each
        # owner wants the previous item: reverse the tail for wants order.
        wants_order = [items[0]] + list(reversed(items[1:]))
        participants = tuple(Participant(user_id=i.owner_id, item_id=i.id) for i in wants_order)

        return Candidate(
            cycle_type=cycle_type,
            participants=participants,
            breakdown=breakdown,
            oldest_listing=min(i.created_at for i in items),
        )
