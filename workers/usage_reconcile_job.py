"""
Usage window reset job.

Sweeps durable usage records and starts a new window for every record whose
own cadence has elapsed (daily, weekly, monthly or yearly). Resets go through
the same compare-and-set path consume() uses, so a record reset by a user's
request in the meantime is left alone.

The sweep is an optimisation: consume() resets lazily on its own, so a
missed run never lets a user exceed their quota.

Respects USAGE_RECONCILE_DRY_RUN for safe rollout.

Run once:
    python -m workers.usage_reconcile_job

Run continuously:
    python -m workers.usage_reconcile_job --forever
"""

from __future__ import annotations

import argparse
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from feature_quota.cache import UsageCache
from feature_quota.errors import StoreError
from feature_quota.reconciler import UsageReconciler
from feature_quota.settings import load_settings
from feature_quota.store import UsageStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class ReconcileStats:
    started_at: str
    completed_at: Optional[str] = None
    records_scanned: int = 0
    windows_reset: int = 0
    errors: int = 0
    dry_run: bool = True

    def to_dict(self) -> dict:
        return {
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "records_scanned": self.records_scanned,
            "windows_reset": self.windows_reset,
            "errors": self.errors,
            "dry_run": self.dry_run,
        }


def _build_reconciler() -> UsageReconciler:
    settings = load_settings()
    store = UsageStore.from_settings(settings)
    cache = UsageCache(
        redis_url=settings.redis_url,
        ttl_seconds=settings.cache_ttl_seconds,
        stale_after_seconds=settings.cache_stale_after_seconds,
    )
    return UsageReconciler(store, cache)


def run_usage_reconcile_cycle(
    reconciler: Optional[UsageReconciler] = None,
    *,
    now: Optional[datetime] = None,
    dry_run: Optional[bool] = None,
) -> ReconcileStats:
    """One sweep over the durable store. Never raises on store failures."""
    if dry_run is None:
        dry_run = load_settings().reconcile_dry_run
    stats = ReconcileStats(started_at=datetime.now(timezone.utc).isoformat(), dry_run=dry_run)

    try:
        rec = reconciler or _build_reconciler()
        result = rec.reset_elapsed_windows(now=now, dry_run=dry_run)
        stats.records_scanned = result.records_scanned
        stats.windows_reset = result.windows_reset
        stats.errors = result.errors
    except StoreError as exc:
        stats.errors += 1
        logger.error(
            "Usage reconcile cycle aborted",
            extra={"error": str(exc), "error_code": exc.error_code},
        )

    stats.completed_at = datetime.now(timezone.utc).isoformat()
    logger.info("Usage reconcile cycle finished", extra=stats.to_dict())
    return stats


def run_forever(interval_seconds: Optional[int] = None) -> None:
    settings = load_settings()
    interval = interval_seconds or settings.reconcile_interval_seconds
    reconciler = _build_reconciler()
    while True:
        run_usage_reconcile_cycle(reconciler, dry_run=settings.reconcile_dry_run)
        time.sleep(interval)


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Reset elapsed feature usage windows")
    parser.add_argument("--forever", action="store_true", help="keep running on an interval")
    parser.add_argument("--interval", type=int, default=None, help="seconds between sweeps")
    args = parser.parse_args(argv)

    if args.forever:
        run_forever(args.interval)
        return 0

    stats = run_usage_reconcile_cycle()
    return 1 if stats.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
