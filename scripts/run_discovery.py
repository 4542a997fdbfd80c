"""Run one discovery cycle (cron entry point).

Usage::

    python scripts/run_discovery.py                      # snapshot = now
    python scripts/run_discovery.py 2026-10-18T12:00:00Z # explicit snapshot
"""
import asyncio
import json
import sys
from datetime import datetime, timezone
sys.path.insert(0, ".")

from app.config import get_engine_config, get_settings
from app.database import engine
from app.services.discovery_service import DiscoveryService
from app.utils.logging import configure_logging


def _parse_snapshot(argv):
    if len(argv) < 2:
        return None
    value = datetime.fromisoformat(argv[1].replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


async def main(snapshot_time):
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, settings.ENVIRONMENT)
    try:
        result = await DiscoveryService(get_engine_config()).run_discovery_cycle(snapshot_time)
    finally:
        await engine.dispose()
    print(json.dumps(result.as_dict(), indent=2))
    # Non-zero exit lets cron alerting notice a skipped run.
    return 1 if result.skipped else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(_parse_snapshot(sys.argv))))
