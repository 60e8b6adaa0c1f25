"""Background job that applies time-based reputation recovery."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from whispr_safety.moderation.domain.reputation import ReputationService

logger = logging.getLogger(__name__)


async def run(service: ReputationService, *, now: datetime | None = None) -> int:
    """Run a single recovery sweep and return the number of users updated.

    Safe to schedule as often as needed; a second sweep in the same window
    leaves scores where the first one put them.
    """

    now = now or datetime.now(timezone.utc)
    updated = await service.run_recovery_pass(now=now)
    logger.info("reputation recovery sweep finished", extra={"updated": len(updated)})
    return len(updated)
