"""
Durable usage store backed by SQLAlchemy.

The conditional increment is a single UPDATE whose WHERE clause carries the
ceiling (`count < limit`). Whether a unit of quota was granted is decided by
the row count of that statement, never by comparing a previously read count
in Python, so concurrent callers on different devices cannot overshoot.

Failures are only signalled (StoreUnavailableError / StoreTimeoutError);
callers decide whether to fail open or closed.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import create_engine, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker

from .db import Base, FeatureUsage, generate_uuid
from .errors import StoreTimeoutError, StoreUnavailableError
from .models import IncrementResult, Limit, ResetPeriod, UsageRecord, ensure_utc, is_unlimited
from .settings import QuotaSettings

logger = logging.getLogger(__name__)

# Insert races are retried this many times before giving up.
MAX_INSERT_ATTEMPTS = 3

_TIMEOUT_MARKERS = ("timeout", "timed out", "database is locked", "canceling statement")


def create_store_engine(settings: QuotaSettings) -> Engine:
    """Create an engine whose connections and statements respect the store timeout."""
    url = settings.database_url
    timeout = settings.store_timeout_seconds

    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"timeout": timeout, "check_same_thread": False},
            pool_pre_ping=True,
        )

    connect_args = {}
    if url.startswith("postgresql"):
        connect_args = {
            "connect_timeout": max(1, int(timeout)),
            "options": f"-c statement_timeout={int(timeout * 1000)}",
        }
    return create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        pool_timeout=timeout,
    )


def _to_record(row: FeatureUsage) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        feature_id=row.feature_id,
        count=int(row.usage_count),
        window_start=row.window_start,
        reset_period=ResetPeriod(row.reset_period),
    )


class UsageStore:
    """Authoritative per-(user, feature) counters shared by every session and device."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._session_factory = sessionmaker(autoflush=False, bind=engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: QuotaSettings) -> "UsageStore":
        return cls(create_store_engine(settings))

    def create_schema(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    # -- error mapping ----------------------------------------------------

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except PoolTimeoutError as exc:
            raise StoreTimeoutError(operation, str(exc)) from exc
        except OperationalError as exc:
            message = str(exc)
            if any(marker in message.lower() for marker in _TIMEOUT_MARKERS):
                raise StoreTimeoutError(operation, message) from exc
            raise StoreUnavailableError(operation, message) from exc
        except SQLAlchemyError as exc:
            raise StoreUnavailableError(operation, str(exc)) from exc

    def _session(self) -> Session:
        return self._session_factory()

    @staticmethod
    def _row_filter(user_id: str, feature_id: str):
        return (FeatureUsage.user_id == user_id, FeatureUsage.feature_id == feature_id)

    def _fetch(self, session: Session, user_id: str, feature_id: str) -> Optional[FeatureUsage]:
        stmt = select(FeatureUsage).where(*self._row_filter(user_id, feature_id))
        return session.execute(stmt).scalar_one_or_none()

    # -- reads ------------------------------------------------------------

    def read(self, user_id: str, feature_id: str) -> Optional[UsageRecord]:
        with self._guard("read"):
            with self._session() as session:
                row = self._fetch(session, user_id, feature_id)
                return _to_record(row) if row is not None else None

    def iter_records(self, *, batch_size: int = 500) -> Iterator[UsageRecord]:
        """
        Page through every record with a resetting cadence and a non-zero count.

        Each page is read in its own short session so callers may write
        between pages.
        """
        last_id = ""
        while True:
            stmt = (
                select(FeatureUsage)
                .where(FeatureUsage.reset_period != ResetPeriod.NEVER.value)
                .where(FeatureUsage.usage_count > 0)
                .where(FeatureUsage.id > last_id)
                .order_by(FeatureUsage.id)
                .limit(batch_size)
            )
            with self._guard("iter_records"):
                with self._session() as session:
                    rows = session.execute(stmt).scalars().all()
                    page = [_to_record(row) for row in rows]
            if not rows:
                return
            last_id = rows[-1].id
            yield from page
            if len(rows) < batch_size:
                return

    # -- writes -----------------------------------------------------------

    def conditional_increment(
        self,
        user_id: str,
        feature_id: str,
        limit: Limit,
        *,
        window_start: datetime,
        reset_period: ResetPeriod,
    ) -> IncrementResult:
        """
        Atomically add one use when the current count is below `limit`.

        An unlimited `limit` always increments. The first accepted use for a
        pair creates its row with count 1, stamped with `window_start`.
        """
        unlimited = is_unlimited(limit)
        window_start = ensure_utc(window_start)

        with self._guard("conditional_increment"):
            for attempt in range(1, MAX_INSERT_ATTEMPTS + 1):
                with self._session() as session, session.begin():
                    stmt = update(FeatureUsage).where(*self._row_filter(user_id, feature_id))
                    if not unlimited:
                        stmt = stmt.where(FeatureUsage.usage_count < limit)
                    stmt = stmt.values(usage_count=FeatureUsage.usage_count + 1).execution_options(
                        synchronize_session=False
                    )
                    result = session.execute(stmt)
                    current = session.execute(
                        select(FeatureUsage.usage_count).where(*self._row_filter(user_id, feature_id))
                    ).scalar_one_or_none()

                if result.rowcount == 1:
                    return IncrementResult(accepted=True, new_count=int(current))
                if current is not None:
                    return IncrementResult(accepted=False, new_count=int(current))
                if not unlimited and limit <= 0:
                    return IncrementResult(accepted=False, new_count=0)

                try:
                    with self._session() as session, session.begin():
                        session.execute(
                            insert(FeatureUsage).values(
                                id=generate_uuid(),
                                user_id=user_id,
                                feature_id=feature_id,
                                usage_count=1,
                                window_start=window_start,
                                reset_period=ResetPeriod(reset_period).value,
                            )
                        )
                    return IncrementResult(accepted=True, new_count=1)
                except IntegrityError:
                    # Another writer created the row first; go back to the conditional update.
                    logger.debug(
                        "Usage row created concurrently, retrying increment",
                        extra={"user_id": user_id, "feature_id": feature_id, "attempt": attempt},
                    )

        raise StoreUnavailableError(
            "conditional_increment",
            f"could not create usage row for {user_id}/{feature_id} after {MAX_INSERT_ATTEMPTS} attempts",
        )

    def reset_window(
        self,
        user_id: str,
        feature_id: str,
        new_window_start: datetime,
        *,
        reset_period: Optional[ResetPeriod] = None,
        expected_window_start: Optional[datetime] = None,
    ) -> UsageRecord:
        """
        Set count to 0 and start a new window.

        With `expected_window_start` the reset only applies while the row
        still carries that start; if another device reset first, the durable
        record is returned as-is. A given `reset_period` replaces the stored
        cadence for the new window.
        """
        new_window_start = ensure_utc(new_window_start)
        values = {"usage_count": 0, "window_start": new_window_start}
        if reset_period is not None:
            values["reset_period"] = ResetPeriod(reset_period).value

        with self._guard("reset_window"):
            with self._session() as session, session.begin():
                stmt = update(FeatureUsage).where(*self._row_filter(user_id, feature_id))
                if expected_window_start is not None:
                    stmt = stmt.where(FeatureUsage.window_start == ensure_utc(expected_window_start))
                stmt = stmt.values(**values).execution_options(synchronize_session=False)
                result = session.execute(stmt)
                row = self._fetch(session, user_id, feature_id)

                if row is None:
                    if reset_period is None:
                        raise StoreUnavailableError(
                            "reset_window", f"no usage row for {user_id}/{feature_id} and no reset_period"
                        )
                    row = FeatureUsage(
                        id=generate_uuid(),
                        user_id=user_id,
                        feature_id=feature_id,
                        usage_count=0,
                        window_start=new_window_start,
                        reset_period=ResetPeriod(reset_period).value,
                    )
                    session.add(row)
                    session.flush()
                elif result.rowcount == 0:
                    logger.info(
                        "Usage window already reset by another writer",
                        extra={"user_id": user_id, "feature_id": feature_id},
                    )

                return _to_record(row)
