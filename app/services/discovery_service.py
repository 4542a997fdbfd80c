"""
Swapmatch — Batch discovery run and scheduler

One ``run_discovery_cycle(snapshot_time)``:

  1. Load a graph snapshot as of ``snapshot_time`` (bounded retries).  If it
     cannot be read at all the run is skipped; existing opportunities stay
     valid until their own TTL.
  2. Maintenance pass: expire TTL-elapsed, convert matched, and invalidate
     degenerate active opportunities.
  3. Build the filtered top-K edge index once.
  4. Search the anchor partitions in worker threads (bounded parallelism).
     The time budget is checked before each partition starts; once it is
     spent the remaining partitions are skipped and the run reports
     ``aborted``.  Results already committed are unaffected.
  5. Commit each partition's candidates independently.

All timestamps written by a run are ``snapshot_time``, so re-running the
same snapshot is idempotent: sets that are already active are reported as
``already_active`` rather than duplicated.

``DiscoveryScheduler`` drives runs on a fixed interval inside the API
process; ``scripts/run_discovery.py`` performs a single run for cron.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Callable

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.config import EngineConfig
from app.services.cycle_service import CycleDiscoveryEngine, EdgeIndex
from app.services.event_service import EventPublisher
from app.services.graph import GraphSnapshot
from app.services.graph_store import StoreFactory, sql_store_scope
from app.services.opportunity_service import (
    ALREADY_ACTIVE,
    CREATED,
    DROPPED,
    SUPPRESSED,
    OpportunityService,
)
from app.utils.errors import SnapshotUnavailableError, TransientStoreError

logger = structlog.get_logger("swapmatch.discovery_service")


@dataclass
class DiscoveryRunResult:
    snapshot_time: datetime
    created: int = 0
    expired: int = 0
    converted: int = 0
    dropped: int = 0
    already_active: int = 0
    suppressed: int = 0
    partitions_completed: int = 0
    partitions_total: int = 0
    aborted: bool = False
    skipped: bool = False
    duration_ms: float = 0.0

    def as_dict(self) -> dict:
        data = asdict(self)
        data["snapshot_time"] = self.snapshot_time.isoformat()
        return data


class DiscoveryService:
    """Runs one bounded discovery + lifecycle pass over the preference graph."""

    def __init__(
        self,
        config: EngineConfig,
        store_factory: StoreFactory = sql_store_scope,
        publisher: EventPublisher | None = None,
        engine: CycleDiscoveryEngine | None = None,
        opportunities: OpportunityService | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._store_factory = store_factory
        self.engine = engine or CycleDiscoveryEngine(config)
        self.opportunities = opportunities or OpportunityService(
            config, store_factory=store_factory, publisher=publisher
        )
        self._clock = clock

    async def run_discovery_cycle(self, snapshot_time: datetime | None = None) -> DiscoveryRunResult:
        """Execute one full run; never raises for store failures."""
        snapshot_time = snapshot_time or datetime.now(timezone.utc)
        result = DiscoveryRunResult(snapshot_time=snapshot_time)
        started = self._clock()
        deadline = started + self.config.time_budget_seconds
        log = logger.bind(run_id=uuid.uuid4().hex[:12], snapshot_time=snapshot_time.isoformat())
        log.info("discovery_run_start", partitions=self.config.partitions)

        # ── 1. Snapshot ───────────────────────────────────────────────────
        try:
            snapshot = await self._load_snapshot(snapshot_time)
        except SnapshotUnavailableError as exc:
            result.skipped = True
            result.duration_ms = round((self._clock() - started) * 1000, 2)
            log.error("discovery_run_skipped", reason=exc.message)
            return result

        # ── 2. Maintenance ────────────────────────────────────────────────
        try:
            maintenance = await self.opportunities.run_maintenance(snapshot, snapshot_time)
            result.expired = maintenance.expired + maintenance.degenerate
            result.converted = maintenance.converted
        except TransientStoreError as exc:
            # Next run retries the same transitions.
            log.warning("maintenance_failed", error=exc.message)

        # ── 3. Edge index ─────────────────────────────────────────────────
        index = await asyncio.to_thread(self.engine.build_index, snapshot, snapshot_time)
        partitions = self.engine.partition_anchors(index)
        result.partitions_total = len(partitions)

        # ── 4 + 5. Partition search and commit ────────────────────────────
        outcomes: Counter[str] = Counter()
        semaphore = asyncio.Semaphore(self.config.parallelism)

        async def process(number: int, anchors: list[str]) -> None:
            async with semaphore:
                if self._clock() >= deadline:
                    result.aborted = True
                    log.warning("partition_skipped_budget_exhausted", partition=number)
                    return
                partition_outcomes = await self._process_partition(index, anchors, snapshot_time)
                outcomes.update(partition_outcomes)
                result.partitions_completed += 1
                log.info(
                    "partition_complete",
                    partition=number,
                    anchors=len(anchors),
                    **dict(partition_outcomes),
                )

        await asyncio.gather(*(process(n, anchors) for n, anchors in enumerate(partitions)))

        result.created = outcomes[CREATED]
        result.already_active = outcomes[ALREADY_ACTIVE]
        result.suppressed = outcomes[SUPPRESSED]
        result.dropped = outcomes[DROPPED]
        result.duration_ms = round((self._clock() - started) * 1000, 2)

        log.info("discovery_run_complete", **{k: v for k, v in result.as_dict().items() if k != "snapshot_time"})
        return result

    # ── Helpers ───────────────────────────────────────────────────────────

    async def _load_snapshot(self, snapshot_time: datetime) -> GraphSnapshot:
        base = self.config.write_retry_base_seconds
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception_type(TransientStoreError),
                stop=stop_after_attempt(self.config.snapshot_retry_attempts),
                wait=wait_exponential(multiplier=base, max=base * 8),
                reraise=True,
            ):
                with attempt:
                    async with self._store_factory() as store:
                        return await store.load_snapshot(snapshot_time)
        except TransientStoreError as exc:
            raise SnapshotUnavailableError(
                "Graph snapshot could not be read",
                details={"attempts": self.config.snapshot_retry_attempts},
            ) from exc
        raise SnapshotUnavailableError("Graph snapshot could not be read")

    async def _process_partition(
        self, index: EdgeIndex, anchors: list[str], snapshot_time: datetime
    ) -> Counter[str]:
        candidates = await asyncio.to_thread(self.engine.search_partition, index, anchors)
        outcomes: Counter[str] = Counter()
        for candidate in candidates:
            outcomes[await self.opportunities.commit_candidate(candidate, snapshot_time)] += 1
        return outcomes


# ──────────────────────────────────────────────────────────────────────────────
# Scheduler
# ──────────────────────────────────────────────────────────────────────────────

class DiscoveryScheduler:
    """Runs discovery every ``interval_seconds`` until stopped."""

    def __init__(self, service_factory: Callable[[], DiscoveryService], interval_seconds: float) -> None:
        self._service_factory = service_factory
        self.interval_seconds = interval_seconds
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._loop(), name="discovery-scheduler")
        logger.info("discovery_scheduler_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("discovery_scheduler_stopped", runs=self.runs)

    async def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                await self._service_factory().run_discovery_cycle()
            except Exception:
                logger.exception("discovery_run_failed")
            self.runs += 1

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
