"""
Keeps the usage cache convergent with the durable store and performs
window resets.

The durable record always wins: on any disagreement the cache entry is
invalidated and overwritten, never merged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from .cache import UsageCache
from .errors import StoreError
from .models import CachedUsage, ResetPeriod, UsageRecord
from .store import UsageStore
from .window import current_window_start, needs_reset

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    records_scanned: int = 0
    windows_reset: int = 0
    errors: int = 0


class UsageReconciler:
    def __init__(
        self,
        store: UsageStore,
        cache: UsageCache,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def refresh(
        self, user_id: str, feature_id: str, cached: Optional[CachedUsage] = None
    ) -> Optional[UsageRecord]:
        """Read the durable record and bring the cache in line with it. Raises StoreError."""
        durable = self.store.read(user_id, feature_id)
        self.reconcile(user_id, feature_id, cached, durable)
        return durable

    def reconcile(
        self,
        user_id: str,
        feature_id: str,
        cached: Optional[CachedUsage],
        durable: Optional[UsageRecord],
    ) -> bool:
        """Overwrite the cache with `durable`. Returns True when the two had diverged."""
        if durable is None:
            if cached is not None:
                self.cache.invalidate(user_id, feature_id)
                return True
            return False

        diverged = False
        if cached is not None:
            snapshot = cached.record
            if snapshot.window_start != durable.window_start:
                diverged = True
                logger.info(
                    "Cached usage window diverged from store",
                    extra={
                        "user_id": user_id,
                        "feature_id": feature_id,
                        "cached_window_start": snapshot.window_start.isoformat(),
                        "durable_window_start": durable.window_start.isoformat(),
                    },
                )
            elif snapshot.count != durable.count or snapshot.reset_period != durable.reset_period:
                diverged = True
            if diverged:
                self.cache.invalidate(user_id, feature_id)

        self.cache.put(user_id, feature_id, durable)
        return diverged

    def reset_if_elapsed(
        self,
        record: UsageRecord,
        *,
        now: Optional[datetime] = None,
        reset_period: Optional[ResetPeriod] = None,
    ) -> UsageRecord:
        """
        Start a new window when the record's window is over.

        The reset is a compare-and-set on the record's window start, so two
        devices resetting at once produce a single reset.
        """
        now = now or self._clock()
        if not needs_reset(now, record.window_start, record.reset_period):
            return record

        cadence = ResetPeriod(reset_period or record.reset_period)
        durable = self.store.reset_window(
            record.user_id,
            record.feature_id,
            current_window_start(now, cadence),
            reset_period=cadence,
            expected_window_start=record.window_start,
        )
        logger.info(
            "Usage window reset",
            extra={
                "user_id": record.user_id,
                "feature_id": record.feature_id,
                "previous_count": record.count,
                "previous_window_start": record.window_start.isoformat(),
                "window_start": durable.window_start.isoformat(),
            },
        )
        self.cache.invalidate(record.user_id, record.feature_id)
        self.cache.put(record.user_id, record.feature_id, durable)
        return durable

    def reset_elapsed_windows(self, *, now: Optional[datetime] = None, dry_run: bool = False) -> SweepResult:
        """Reset every durable record whose own cadence has elapsed."""
        now = now or self._clock()
        result = SweepResult()

        for record in self.store.iter_records():
            result.records_scanned += 1
            if not needs_reset(now, record.window_start, record.reset_period):
                continue
            if dry_run:
                result.windows_reset += 1
                continue
            try:
                self.reset_if_elapsed(record, now=now)
                result.windows_reset += 1
            except StoreError as exc:
                result.errors += 1
                logger.warning(
                    "Failed to reset usage window",
                    extra={
                        "user_id": record.user_id,
                        "feature_id": record.feature_id,
                        "error": str(exc),
                        "error_code": exc.error_code,
                    },
                )

        return result
