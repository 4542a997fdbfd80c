"""
Swapmatch — API dependency providers

Routes receive their services through ``Depends`` so tests can swap in an
in-memory store via ``app.dependency_overrides``.
"""

from __future__ import annotations

from fastapi import Depends

from app.config import EngineConfig, get_engine_config
from app.services.discovery_service import DiscoveryService
from app.services.opportunity_service import OpportunityService
from app.services.swipe_service import SwipeService


def get_swipe_service() -> SwipeService:
    return SwipeService()


def get_opportunity_service(
    config: EngineConfig = Depends(get_engine_config),
) -> OpportunityService:
    return OpportunityService(config)


def get_discovery_service(
    config: EngineConfig = Depends(get_engine_config),
) -> DiscoveryService:
    return DiscoveryService(config)
