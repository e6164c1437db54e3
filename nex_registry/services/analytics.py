"""
Download analytics: a per-package rolling history of daily download counts
and the totals derived from it.

The history is a date-ordered list of ``{date, count}`` entries, one per
calendar day, capped at ``download_history_days`` entries. Weekly and monthly
figures are recomputed from the retained history on every write rather than
decayed incrementally.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from nex_registry.domain.errors import PackageNotFoundError
from nex_registry.domain.models import DownloadHistoryEntry, PackageRecord, RepositoryConfig
from nex_registry.storage.db_manager import DatabaseManager

logger = logging.getLogger(__name__)

PACKAGES = "packages"


def add_download(
    history: List[DownloadHistoryEntry], today: date, retention: int
) -> List[DownloadHistoryEntry]:
    """
    Count one download on ``today`` and return the trimmed history.
    """
    entries = [entry.model_copy() for entry in history]
    for entry in entries:
        if entry.day == today:
            entry.count += 1
            break
    else:
        entries.append(DownloadHistoryEntry(day=today, count=1))
        entries.sort(key=lambda e: e.day)

    if len(entries) > retention:
        entries = entries[len(entries) - retention:]
    return entries


def window_total(history: List[DownloadHistoryEntry], today: date, days: int) -> int:
    """
    Sum of counts over the trailing ``days`` calendar days, today included.
    """
    start = today - timedelta(days=days - 1)
    return sum(entry.count for entry in history if entry.day >= start)


def counts_as_download(user_agent: Optional[str], download_flag: bool, cli_marker: str) -> bool:
    """
    A manifest fetch counts as a download when the CLI fetched it or the
    caller explicitly asked for it to be counted.
    """
    if download_flag:
        return True
    return bool(cli_marker) and cli_marker in (user_agent or "")


class DownloadTracker:
    """
    Records downloads against package records held in the document store.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    @property
    def config(self) -> RepositoryConfig:
        return self.db.get_repository_config()

    def record_download(self, package: PackageRecord, now: Optional[datetime] = None) -> PackageRecord:
        """
        Count one download of ``package`` and persist the updated counters.

        The stored record is re-read under the package lock so concurrent
        downloads or rating changes are never lost. Returns the saved record.
        """
        now = now or datetime.now()
        today = now.date()
        config = self.config

        with self.db.record_lock(PACKAGES, package.id):
            doc = self.db.find_one(PACKAGES, {"id": package.id})
            if doc is None:
                raise PackageNotFoundError(package.id)
            current = PackageRecord.model_validate(doc)

            current.downloads += 1
            current.last_downloaded_at = now
            current.download_history = add_download(
                current.download_history, today, config.download_history_days
            )
            self._apply_windows(current, today, config)

            self.db.replace_one(PACKAGES, {"id": current.id}, current.to_document())

        logger.debug(
            "Download recorded for %s (total=%d, weekly=%d, monthly=%d)",
            current.id,
            current.downloads,
            current.weekly_downloads,
            current.monthly_downloads,
        )
        return current

    def refresh_windows(self, package_id: str, today: Optional[date] = None) -> Optional[PackageRecord]:
        """
        Recompute weekly/monthly figures without counting a download, so the
        windows decay on days nobody downloads the package.
        """
        today = today or datetime.now().date()
        config = self.config

        with self.db.record_lock(PACKAGES, package_id):
            doc = self.db.find_one(PACKAGES, {"id": package_id})
            if doc is None:
                return None
            current = PackageRecord.model_validate(doc)
            weekly, monthly = current.weekly_downloads, current.monthly_downloads
            self._apply_windows(current, today, config)
            if (weekly, monthly) != (current.weekly_downloads, current.monthly_downloads):
                self.db.replace_one(PACKAGES, {"id": package_id}, current.to_document())
        return current

    def download_summary(self, package: PackageRecord) -> Dict[str, object]:
        return {
            "id": package.id,
            "downloads": package.downloads,
            "weeklyDownloads": package.weekly_downloads,
            "monthlyDownloads": package.monthly_downloads,
            "lastDownloadedAt": package.last_downloaded_at.isoformat() if package.last_downloaded_at else None,
            "history": [entry.to_document() for entry in package.download_history],
        }

    @staticmethod
    def _apply_windows(package: PackageRecord, today: date, config: RepositoryConfig) -> None:
        package.weekly_downloads = window_total(package.download_history, today, config.weekly_window_days)
        package.monthly_downloads = window_total(package.download_history, today, config.monthly_window_days)
