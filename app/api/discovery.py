"""
Swapmatch — Discovery API (operator trigger)

Runs one discovery cycle synchronously; the in-process scheduler and the
cron script call the same service.
"""

from __future__ import annotations

from datetime import timezone

import structlog
from fastapi import APIRouter, Depends

from app.api.deps import get_discovery_service
from app.schemas.discovery import DiscoveryRunRequest, DiscoveryRunResponse
from app.services.discovery_service import DiscoveryService

logger = structlog.get_logger("swapmatch.api.discovery")

router = APIRouter()


@router.post(
    "/run",
    response_model=DiscoveryRunResponse,
    summary="Run one discovery cycle now",
)
async def run_discovery(
    payload: DiscoveryRunRequest | None = None,
    service: DiscoveryService = Depends(get_discovery_service),
) -> DiscoveryRunResponse:
    snapshot_time = payload.snapshot_time if payload else None
    if snapshot_time is not None and snapshot_time.tzinfo is None:
        snapshot_time = snapshot_time.replace(tzinfo=timezone.utc)

    logger.info("discovery_run_requested", snapshot_time=snapshot_time)
    result = await service.run_discovery_cycle(snapshot_time)
    return DiscoveryRunResponse(**result.as_dict())
