"""
Swapmatch — Swipes API

The online path: record one swipe and report whether it completed a mutual
match.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, status

from app.api.deps import get_swipe_service
from app.schemas.swipe import SwipeCreate, SwipeResponse
from app.services.swipe_service import SwipeService

logger = structlog.get_logger("swapmatch.api.swipes")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Record a swipe
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=SwipeResponse,
    status_code=status.HTTP_200_OK,
    summary="Record a like/pass swipe from one item on another",
)
async def record_swipe(
    payload: SwipeCreate,
    service: SwipeService = Depends(get_swipe_service),
) -> SwipeResponse:
    """Store the swipe and create the Match when the like is reciprocated.

    Rejections (422) carry a ``reason``: ``self_swipe``, ``duplicate_swipe``,
    ``invalid_source``, ``invalid_target``, ``not_owner`` or ``malformed``.
    A store outage returns 503 and the swipe may be retried.
    """
    result = await service.record_swipe(
        swiping_item_id=str(payload.swiping_item_id),
        swiped_item_id=str(payload.swiped_item_id),
        liked=payload.liked,
        acting_user_id=str(payload.user_id) if payload.user_id else None,
    )
    return SwipeResponse(
        swipe_id=result.swipe_id,
        match_created=result.match_created,
        match_id=result.match_id,
        converted_opportunity_ids=list(result.converted_opportunity_ids),
        expired_opportunity_ids=list(result.expired_opportunity_ids),
    )
