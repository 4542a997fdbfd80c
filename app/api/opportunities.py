"""
Swapmatch — Opportunities API

Read and dismiss the 2-way / 3-way swap opportunities surfaced to a user.
"""

from __future__ import annotations

import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_opportunity_service
from app.schemas.opportunity import (
    DismissRequest,
    DismissResponse,
    OpportunityListResponse,
    OpportunityParticipant,
    OpportunityResponse,
)
from app.services.opportunity_service import DISMISS_NOT_FOUND, OpportunityService
from app.services.profile_service import OpportunityView
from app.utils.errors import NotFoundError

logger = structlog.get_logger("swapmatch.api.opportunities")

router = APIRouter()


def _to_response(view: OpportunityView) -> OpportunityResponse:
    record = view.record
    return OpportunityResponse(
        id=record.id,
        cycle_type=record.cycle_type,
        participants=[
            OpportunityParticipant(
                user_id=p.user_id,
                item_id=p.item_id,
                display_name=p.display_name,
                avatar_url=p.avatar_url,
                item_title=p.item_title,
                item_photo=p.item_photo,
                item_category=p.item_category,
                is_mine=p.is_mine,
            )
            for p in view.participants
        ],
        confidence_score=record.confidence_score,
        score_breakdown=record.score_breakdown,
        status=record.status,
        closed_reason=record.closed_reason,
        created_at=record.created_at,
        expires_at=record.expires_at,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET / — Active opportunities for a user
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/",
    response_model=OpportunityListResponse,
    summary="List a user's active swap opportunities, best first",
)
async def list_opportunities(
    user_id: uuid.UUID = Query(...),
    service: OpportunityService = Depends(get_opportunity_service),
) -> OpportunityListResponse:
    views = await service.list_for_user(str(user_id))
    return OpportunityListResponse(
        user_id=user_id,
        opportunities=[_to_response(v) for v in views],
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{opportunity_id}
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{opportunity_id}",
    response_model=OpportunityResponse,
    summary="Get one opportunity",
)
async def get_opportunity(
    opportunity_id: uuid.UUID,
    user_id: Optional[uuid.UUID] = Query(None),
    service: OpportunityService = Depends(get_opportunity_service),
) -> OpportunityResponse:
    view = await service.get(str(opportunity_id), str(user_id) if user_id else None)
    return _to_response(view)


# ──────────────────────────────────────────────────────────────────────────────
# POST /{opportunity_id}/dismiss
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{opportunity_id}/dismiss",
    response_model=DismissResponse,
    summary="Dismiss an opportunity for yourself or for all participants",
)
async def dismiss_opportunity(
    opportunity_id: uuid.UUID,
    payload: DismissRequest,
    service: OpportunityService = Depends(get_opportunity_service),
) -> DismissResponse:
    """``scope="self"`` (default) hides it for the requester only;
    ``scope="all"`` closes it for every participant."""
    result = await service.dismiss(str(opportunity_id), str(payload.user_id), scope=payload.scope)
    if result == DISMISS_NOT_FOUND:
        raise NotFoundError(
            "Opportunity not found",
            details={"opportunity_id": str(opportunity_id), "result": result},
        )
    return DismissResponse(opportunity_id=opportunity_id, result=result)
