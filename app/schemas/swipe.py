from pydantic import BaseModel, StrictBool
from uuid import UUID
from typing import Optional

class SwipeCreate(BaseModel):
    swiping_item_id: UUID
    swiped_item_id: UUID
    liked: StrictBool
    user_id: Optional[UUID] = None  # acting user; must own swiping_item_id when given

class SwipeResponse(BaseModel):
    swipe_id: Optional[UUID] = None
    match_created: bool
    match_id: Optional[UUID] = None
    converted_opportunity_ids: list[UUID] = []
    expired_opportunity_ids: list[UUID] = []
