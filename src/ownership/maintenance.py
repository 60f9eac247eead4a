"""Background maintenance tasks for the claims module."""

from __future__ import annotations

import asyncio
import logging

from ownership.rate_limit import RateLimiter


logger = logging.getLogger(__name__)

RATE_LIMIT_PURGE_INTERVAL_SEC = 600


async def rate_limit_maintenance_loop(
    rate_limiter: RateLimiter,
    *,
    interval_sec: int = RATE_LIMIT_PURGE_INTERVAL_SEC,
) -> None:
    """Periodically drop rate-limit events that fell out of every window."""
    sleep_for = max(30, int(interval_sec))

    while True:
        try:
            removed = await rate_limiter.purge_stale()
            if removed > 0:
                logger.info("Rate-limit events purged: removed=%s", removed)
        except Exception:
            logger.exception("Rate-limit maintenance loop failed")
        await asyncio.sleep(sleep_for)
