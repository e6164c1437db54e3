"""
Background task for daily registry maintenance.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Dict, Optional

from nex_registry.domain.entities import Registry
from nex_registry.services.analytics import DownloadTracker
from nex_registry.services.ratings import RatingAggregator

logger = logging.getLogger(__name__)


def run_maintenance(
    registry: Registry,
    tracker: DownloadTracker,
    aggregator: RatingAggregator,
    today: Optional[date] = None,
) -> Dict[str, int]:
    """
    Daily job:
    - recompute weekly/monthly download windows so they decay on idle days
    - rebuild each package's rating aggregate from its reviews
    """
    refreshed = reconciled = failed = 0
    for package_id in registry.all_package_ids():
        try:
            before = registry.find_package(package_id)
            after = tracker.refresh_windows(package_id, today=today)
            if before and after and (before.weekly_downloads, before.monthly_downloads) != (
                after.weekly_downloads,
                after.monthly_downloads,
            ):
                refreshed += 1

            rebuilt = aggregator.rebuild_from_reviews(package_id)
            if before and rebuilt and before.total_ratings != rebuilt.total_ratings:
                reconciled += 1
        except Exception as e:
            # Log error but continue with other packages
            failed += 1
            logger.error(f"Maintenance failed for package {package_id}: {e}", exc_info=True)

    logger.info(
        f"Maintenance finished: {refreshed} window(s) refreshed, "
        f"{reconciled} rating aggregate(s) reconciled, {failed} failure(s)"
    )
    return {"refreshed": refreshed, "reconciled": reconciled, "failed": failed}


def _seconds_until(hour: int, minute: int) -> float:
    """
    Compute seconds until the next occurrence of the given local wall-clock time.
    """
    now = datetime.now()
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target = target + timedelta(days=1)
    return (target - now).total_seconds()


async def daily_maintenance_loop(
    registry: Registry,
    tracker: DownloadTracker,
    aggregator: RatingAggregator,
    run_hour: int = 3,
    run_minute: int = 0,
) -> None:
    """
    Run the maintenance job every day at a fixed local time (default 03:00).
    """
    while True:
        await asyncio.sleep(_seconds_until(run_hour, run_minute))
        try:
            run_maintenance(registry, tracker, aggregator)
        except Exception as e:
            logger.error(f"Error in daily maintenance loop: {e}")
