from pydantic import BaseModel
from datetime import datetime
from typing import Optional

class DiscoveryRunRequest(BaseModel):
    snapshot_time: Optional[datetime] = None  # defaults to now (UTC)

class DiscoveryRunResponse(BaseModel):
    snapshot_time: datetime
    created: int
    expired: int
    converted: int
    dropped: int
    already_active: int
    suppressed: int
    partitions_completed: int
    partitions_total: int
    aborted: bool
    skipped: bool
    duration_ms: float
