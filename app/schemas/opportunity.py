from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Literal, Optional

class OpportunityParticipant(BaseModel):
    user_id: UUID
    item_id: UUID
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    item_title: Optional[str] = None
    item_photo: Optional[str] = None
    item_category: Optional[str] = None
    is_mine: bool = False

class OpportunityResponse(BaseModel):
    id: UUID
    cycle_type: Literal["2-way", "3-way"]
    participants: list[OpportunityParticipant]  # each wants the next one's item
    confidence_score: float = Field(ge=0.0, le=1.0)
    score_breakdown: dict = {}
    status: str
    closed_reason: Optional[str] = None
    created_at: datetime
    expires_at: datetime

class OpportunityListResponse(BaseModel):
    user_id: UUID
    opportunities: list[OpportunityResponse]

class DismissRequest(BaseModel):
    user_id: UUID
    scope: Literal["self", "all"] = "self"

class DismissResponse(BaseModel):
    opportunity_id: UUID
    result: Literal["success", "not_found", "already_terminal"]
