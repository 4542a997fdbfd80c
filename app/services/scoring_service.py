"""
Swapmatch — Confidence Scorer

Assigns every exchange candidate (2-way pair or 3-way cycle) a normalised
[0, 1] confidence from six independently normalised sub-scores:

  category   1.0 when the receiver explicitly desires the giver's category,
             otherwise taxonomy similarity x CATEGORY_FALLBACK_SCALE
  value      overlap / union of the two declared value ranges, each widened
             by VALUE_TOLERANCE (0 when disjoint, 0.5 when undeclared)
  condition  1 - |rank_a - rank_b| / 3 on new > like_new > good > fair
  geo        1 - distance / GEO_RADIUS_KM (0.5 when either side has no geo)
  recency    0.5 ** (listing_age_days / RECENCY_HALF_LIFE_DAYS)
  learned    the receiver owner's learned affinity for the giver's category
             (0.5 when that owner has never swiped on the category)

  confidence = sum(w_i x s_i) / sum(w_i), clamped to [0, 1]

Every weight is strictly positive, so the confidence strictly increases
whenever a single sub-score increases with the others held fixed.  For a
cycle, each pairwise sub-score is the mean over the cycle's edges and the
recency sub-score is the mean over its items.

Learned affinities come from the snapshot's swipes: each like an owner's
items gave to a category counts +1, each pass -0.5, and the per-category
mean m is mapped to (m + 1) / 2 and clamped to [0, 1].
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Mapping, Sequence

import structlog

from app.config import EngineConfig
from app.services.graph import (
    CONDITION_RANK,
    CONDITIONS,
    GraphSnapshot,
    ItemNode,
    category_similarity,
)
from app.utils.geo import haversine_distance

logger = structlog.get_logger("swapmatch.scoring_service")

NEUTRAL_SCORE = 0.5
_MAX_CONDITION_GAP = len(CONDITIONS) - 1

LIKE_SIGNAL = 1.0
PASS_SIGNAL = -0.5

# (owner_id, category) -> learned affinity in [0, 1]
Affinities = Mapping[tuple[str, str], float]


@dataclass(frozen=True)
class SubScores:
    category: float
    value: float
    condition: float
    geo: float
    recency: float
    learned: float


@dataclass(frozen=True)
class ScoreBreakdown:
    sub_scores: SubScores
    confidence: float

    def as_dict(self) -> dict:
        return {
            **{k: round(v, 4) for k, v in asdict(self.sub_scores).items()},
            "confidence": round(self.confidence, 4),
        }


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else NEUTRAL_SCORE


def learn_category_affinities(snapshot: GraphSnapshot) -> dict[tuple[str, str], float]:
    """Per-owner category affinities learned from every swipe in ``snapshot``.

    Swipes whose swiper or swiped item is not in the snapshot are ignored.
    """
    totals: dict[tuple[str, str], float] = {}
    counts: dict[tuple[str, str], int] = {}
    signals = [(pair, LIKE_SIGNAL) for pair in snapshot.likes]
    signals.extend((pair, PASS_SIGNAL) for pair in snapshot.passes)

    for (swiper_id, swiped_id), signal in signals:
        swiper = snapshot.items.get(swiper_id)
        swiped = snapshot.items.get(swiped_id)
        if swiper is None or swiped is None:
            continue
        key = (swiper.owner_id, swiped.category)
        totals[key] = totals.get(key, 0.0) + signal
        counts[key] = counts.get(key, 0) + 1

    return {
        key: max(0.0, min(1.0, (total / counts[key] + 1.0) / 2.0))
        for key, total in totals.items()
    }


class ConfidenceScorer:
    """Deterministic candidate scorer.

    The scorer is stateless apart from its ``EngineConfig``; the same
    snapshot, ``now`` and config always yield the same confidence.
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.weights = config.weights

    # ── Public API ────────────────────────────────────────────────────────

    def combine(self, sub: SubScores) -> float:
        """Weighted linear combination of the sub-scores, clamped."""
        w = self.weights
        weighted = (
            (w.category * sub.category)
            + (w.value * sub.value)
            + (w.condition * sub.condition)
            + (w.geo * sub.geo)
            + (w.recency * sub.recency)
            + (w.learned * sub.learned)
        )
        return max(0.0, min(1.0, weighted / w.total))

    def score_edge(
        self,
        giver: ItemNode,
        receiver: ItemNode,
        now: datetime,
        affinities: Affinities | None = None,
    ) -> ScoreBreakdown:
        """Score handing ``giver`` to the owner of ``receiver``."""
        sub = SubScores(
            category=self.category_affinity(giver, receiver),
            value=self.value_compatibility(giver, receiver),
            condition=self.condition_compatibility(giver, receiver),
            geo=self.geo_proximity(giver, receiver),
            recency=_mean([self.recency(giver, now), self.recency(receiver, now)]),
            learned=self.learned_affinity(giver, receiver, affinities),
        )
        return ScoreBreakdown(sub_scores=sub, confidence=self.combine(sub))

    def score_cycle(
        self,
        give_order: Sequence[ItemNode],
        now: datetime,
        affinities: Affinities | None = None,
    ) -> ScoreBreakdown:
        """Score a cycle given in giving order.

        ``give_order[i]`` is handed to the owner of ``give_order[i + 1]``
        (wrapping around), so a 2-item list describes a direct swap.
        """
        n = len(give_order)
        edges = [(give_order[i], give_order[(i + 1) % n]) for i in range(n)]

        sub = SubScores(
            category=_mean([self.category_affinity(g, r) for g, r in edges]),
            value=_mean([self.value_compatibility(g, r) for g, r in edges]),
            condition=_mean([self.condition_compatibility(g, r) for g, r in edges]),
            geo=_mean([self.geo_proximity(g, r) for g, r in edges]),
            recency=_mean([self.recency(item, now) for item in give_order]),
            learned=_mean([self.learned_affinity(g, r, affinities) for g, r in edges]),
        )
        confidence = self.combine(sub)

        logger.debug(
            "cycle_scored",
            items=[item.id for item in give_order],
            confidence=round(confidence, 4),
        )
        return ScoreBreakdown(sub_scores=sub, confidence=confidence)

    # ── Sub-scores ────────────────────────────────────────────────────────

    def category_affinity(self, giver: ItemNode, receiver: ItemNode) -> float:
        if giver.category in receiver.desired_categories:
            return 1.0
        if not receiver.desired_categories:
            return 0.0
        closest = max(
            category_similarity(giver.category, wanted)
            for wanted in receiver.desired_categories
        )
        return max(0.0, min(1.0, closest)) * self.config.category_fallback_scale

    @staticmethod
    def learned_affinity(giver: ItemNode, receiver: ItemNode, affinities: Affinities | None) -> float:
        if not affinities:
            return NEUTRAL_SCORE
        return affinities.get((receiver.owner_id, giver.category), NEUTRAL_SCORE)

    def value_compatibility(self, a: ItemNode, b: ItemNode) -> float:
        range_a = self.widened_range(a)
        range_b = self.widened_range(b)
        if range_a is None or range_b is None:
            return NEUTRAL_SCORE

        overlap = min(range_a[1], range_b[1]) - max(range_a[0], range_b[0])
        if overlap < 0:
            return 0.0
        union = max(range_a[1], range_b[1]) - min(range_a[0], range_b[0])
        if union <= 0:
            # Both ranges collapse to the same point.
            return 1.0
        return overlap / union

    def condition_compatibility(self, a: ItemNode, b: ItemNode) -> float:
        rank_a = CONDITION_RANK.get(a.condition)
        rank_b = CONDITION_RANK.get(b.condition)
        if rank_a is None or rank_b is None:
            return NEUTRAL_SCORE
        return 1.0 - abs(rank_a - rank_b) / _MAX_CONDITION_GAP

    def geo_proximity(self, a: ItemNode, b: ItemNode) -> float:
        distance = self.distance_km(a, b)
        if distance is None:
            return NEUTRAL_SCORE
        return 1.0 - min(distance / self.config.geo_radius_km, 1.0)

    def recency(self, item: ItemNode, now: datetime) -> float:
        age_days = max(0.0, (now - item.created_at).total_seconds() / 86400.0)
        return 0.5 ** (age_days / self.config.recency_half_life_days)

    # ── Shared helpers (also used by the candidate pre-filter) ────────────

    def widened_range(self, item: ItemNode) -> tuple[float, float] | None:
        declared = item.value_range()
        if declared is None:
            return None
        tolerance = self.config.value_tolerance
        low, high = declared
        return (low * (1.0 - tolerance), high * (1.0 + tolerance))

    def value_ranges_compatible(self, a: ItemNode, b: ItemNode) -> bool:
        range_a = self.widened_range(a)
        range_b = self.widened_range(b)
        if range_a is None or range_b is None:
            return True
        return max(range_a[0], range_b[0]) <= min(range_a[1], range_b[1])

    @staticmethod
    def distance_km(a: ItemNode, b: ItemNode) -> float | None:
        if not (a.has_geo and b.has_geo):
            return None
        return haversine_distance(a.latitude, a.longitude, b.latitude, b.longitude)
