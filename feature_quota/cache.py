from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import redis

from .errors import CacheCorruptError, InvalidUserIdError
from .models import CachedUsage, ResetPeriod, UsageRecord

logger = logging.getLogger(__name__)

CACHE_SCHEMA_VERSION = 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UsageCache:
    """
    Redis-backed mirror of recently seen usage records, with in-memory fallback.

    Never authoritative: entries may be stale or missing, and any entry that
    cannot be decoded is dropped and reported as a miss.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        ttl_seconds: int = 300,
        stale_after_seconds: int = 60,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._stale_after = timedelta(seconds=stale_after_seconds)
        self._clock = clock or _utcnow
        self._redis = None
        self._mem: Dict[str, tuple[datetime, str]] = {}

        if redis_url:
            try:
                self._redis = redis.from_url(
                    redis_url,
                    decode_responses=True,
                    socket_connect_timeout=2,
                    socket_timeout=2,
                )
                self._redis.ping()
            except (redis.RedisError, ValueError) as exc:
                logger.warning(
                    "Redis unavailable for usage cache - using in-memory cache",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )
                self._redis = None

    @staticmethod
    def _key(user_id: str, feature_id: str) -> str:
        normalized_user_id = str(user_id).strip()
        if not normalized_user_id:
            raise InvalidUserIdError()
        return f"usage:v{CACHE_SCHEMA_VERSION}:{normalized_user_id}:{feature_id}"

    def get(self, user_id: str, feature_id: str) -> Optional[CachedUsage]:
        key = self._key(user_id, feature_id)
        raw = self._get_raw(key)
        if raw is None:
            return None

        try:
            cached = _decode_usage(key, raw)
        except CacheCorruptError as exc:
            logger.warning(
                "Dropping corrupt usage cache entry",
                extra={"cache_key": key, "error": exc.detail},
            )
            self._delete_raw(key)
            return None

        if self._clock() - cached.fetched_at > self._stale_after:
            return CachedUsage(record=cached.record, fetched_at=cached.fetched_at, stale=True)
        return cached

    def put(self, user_id: str, feature_id: str, record: UsageRecord) -> CachedUsage:
        key = self._key(user_id, feature_id)
        cached = CachedUsage(record=record, fetched_at=self._clock())
        payload = json.dumps(_encode_usage(cached))

        if self._redis is not None:
            try:
                self._redis.setex(key, self._ttl_seconds, payload)
                return cached
            except redis.RedisError as exc:
                logger.warning(
                    "Usage cache write failed",
                    extra={"cache_key": key, "error": str(exc), "error_type": type(exc).__name__},
                )
                return cached

        self._mem[key] = (self._clock(), payload)
        return cached

    def invalidate(self, user_id: str, feature_id: str) -> None:
        self._delete_raw(self._key(user_id, feature_id))

    def _get_raw(self, key: str) -> Optional[str]:
        if self._redis is not None:
            try:
                return self._redis.get(key)
            except redis.RedisError as exc:
                logger.warning(
                    "Usage cache read failed - treating as miss",
                    extra={"cache_key": key, "error": str(exc), "error_type": type(exc).__name__},
                )
                return None

        data = self._mem.get(key)
        if not data:
            return None
        cached_at, payload = data
        if (self._clock() - cached_at).total_seconds() > self._ttl_seconds:
            self._mem.pop(key, None)
            return None
        return payload

    def _delete_raw(self, key: str) -> None:
        if self._redis is not None:
            try:
                self._redis.delete(key)
            except redis.RedisError as exc:
                logger.warning(
                    "Usage cache delete failed",
                    extra={"cache_key": key, "error": str(exc), "error_type": type(exc).__name__},
                )
        self._mem.pop(key, None)


def _encode_usage(cached: CachedUsage) -> dict:
    record = cached.record
    return {
        "schema_version": CACHE_SCHEMA_VERSION,
        "user_id": record.user_id,
        "feature_id": record.feature_id,
        "count": record.count,
        "window_start": record.window_start.isoformat(),
        "reset_period": record.reset_period.value,
        "fetched_at": cached.fetched_at.isoformat(),
    }


def _decode_usage(key: str, raw: str) -> CachedUsage:
    try:
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise CacheCorruptError(key, "entry is not an object")
        if int(data.get("schema_version", 0)) != CACHE_SCHEMA_VERSION:
            raise CacheCorruptError(key, "unsupported usage cache schema version")

        record = UsageRecord(
            user_id=data["user_id"],
            feature_id=data["feature_id"],
            count=int(data["count"]),
            window_start=datetime.fromisoformat(data["window_start"]),
            reset_period=ResetPeriod(data["reset_period"]),
        )
        fetched_at = datetime.fromisoformat(data["fetched_at"])
    except CacheCorruptError:
        raise
    except (ValueError, TypeError, KeyError) as exc:
        raise CacheCorruptError(key, str(exc)) from exc

    if fetched_at.tzinfo is None:
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    return CachedUsage(record=record, fetched_at=fetched_at)
