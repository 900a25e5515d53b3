from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from engagement.services.gateway import EngagementRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MaintenanceSummary:
    requeued: int
    purged: int


async def run_maintenance(
    repository: EngagementRepository,
    *,
    stale_after_seconds: int,
    retention_days: int,
    batch_size: int,
    now: datetime | None = None,
) -> MaintenanceSummary:
    """Return abandoned PROCESSING claims to the queue and drop old terminal jobs."""
    now = now or datetime.now(timezone.utc)
    requeued = await repository.requeue_stale_processing(
        claimed_before=now - timedelta(seconds=stale_after_seconds),
        limit=batch_size,
    )
    purged = await repository.purge_terminal_jobs(
        processed_before=now - timedelta(days=retention_days),
        limit=batch_size,
    )
    if requeued or purged:
        logger.info("job maintenance requeued=%s purged=%s", requeued, purged)
    return MaintenanceSummary(requeued=requeued, purged=purged)
