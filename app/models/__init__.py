"""
Swapmatch — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User
from app.models.item import Item, ItemCategory, ItemCondition
from app.models.match import Match, Swipe
from app.models.opportunity import OpportunityDismissal, SwapOpportunity

__all__ = [
    "User",
    "Item",
    "ItemCategory",
    "ItemCondition",
    "Match",
    "Swipe",
    "SwapOpportunity",
    "OpportunityDismissal",
]
