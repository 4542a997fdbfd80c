"""
Swapmatch — Main API Router

Aggregates all sub-routers under a single prefix so that ``app.main``
can mount the entire API surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from app.api import discovery, opportunities, swipes

router = APIRouter()

router.include_router(swipes.router, prefix="/swipes", tags=["Swipes"])
router.include_router(opportunities.router, prefix="/opportunities", tags=["Opportunities"])
router.include_router(discovery.router, prefix="/discovery", tags=["Discovery"])
