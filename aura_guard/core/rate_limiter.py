"""
Time-bucketed call budgets.

Tracks per-user hourly budgets and global daily budgets per api type.

Bucket keys embed the date and hour, so a bucket stops being reachable when
the clock moves on; ``sweep`` deletes the unreachable ones. Buckets are fixed
windows: a user can spend up to twice the hourly budget by bursting on both
sides of an hour boundary.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from aura_guard.storage.repository import UsageRepository
from aura_guard.storage.store import Store

log = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "rate_limit:"
GLOBAL_USAGE_PREFIX = "global_usage:"
AGGREGATE_API_TYPE = "total_api"
GLOBAL_BUCKET_TTL = 2 * 24 * 3600


@dataclass(frozen=True)
class RateLimitStatus:
    """Budget state of one bucket.

    ``limit`` is None when the api type has no configured ceiling.
    ``reset_in`` is the number of seconds until the bucket rolls over.
    """
    allowed: bool
    current: int
    limit: Optional[int]
    reset_in: int = 0


class RateLimitExceeded(Exception):
    """Raised by ``RateLimiter.require`` when a budget is exhausted."""
    def __init__(self, message: str, status: RateLimitStatus):
        super().__init__(message)
        self.status = status


class RateLimiter:
    """Per-user hourly and global daily call budgets.

    ``check`` + ``increment`` is a check-then-act pair; concurrent requests
    can interleave between the two calls. ``reserve`` performs both as one
    atomic store operation per bucket and is what request paths should use.
    """

    def __init__(
        self,
        store: Store,
        limits: Dict[str, int],
        global_limits: Dict[str, int],
        usage_repository: Optional[UsageRepository] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.store = store
        self.limits = dict(limits)
        self.global_limits = dict(global_limits)
        self.usage_repository = usage_repository
        self.clock = clock
        self._swept_bucket: Optional[str] = None

    # -- keys -------------------------------------------------------------

    def _bucket(self, now: datetime) -> str:
        return f"{now.date().isoformat()}:{now.hour}"

    def _user_key(self, user_id: str, platform: str, api_type: str, now: datetime) -> str:
        return f"{RATE_LIMIT_PREFIX}{platform}:{user_id}:{api_type}:{self._bucket(now)}"

    def _global_key(self, api_type: str, now: datetime) -> str:
        return f"{GLOBAL_USAGE_PREFIX}{api_type}:{now.date().isoformat()}"

    @staticmethod
    def _seconds_to_next_hour(now: datetime) -> int:
        next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        return max(1, int((next_hour - now).total_seconds()))

    @staticmethod
    def _seconds_to_next_day(now: datetime) -> int:
        tomorrow = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
        return max(1, int((tomorrow - now.replace(tzinfo=None)).total_seconds()))

    def _aggregate_applies(self, api_type: str) -> bool:
        return api_type != AGGREGATE_API_TYPE and AGGREGATE_API_TYPE in self.limits

    # -- reads ------------------------------------------------------------

    async def _user_status(self, user_id: str, platform: str, api_type: str, now: datetime) -> RateLimitStatus:
        current = int(await self.store.get(self._user_key(user_id, platform, api_type, now)) or 0)
        limit = self.limits.get(api_type)
        allowed = limit is None or current < limit
        return RateLimitStatus(allowed, current, limit, self._seconds_to_next_hour(now))

    async def check(self, user_id: str, platform: str, api_type: str) -> RateLimitStatus:
        """Read the user's current hour bucket without mutating it.

        When a ``total_api`` budget is configured and exhausted, its status is
        returned instead, since no api type can be called anyway.
        """
        now = self.clock()
        status = await self._user_status(user_id, platform, api_type, now)
        if status.allowed and self._aggregate_applies(api_type):
            aggregate = await self._user_status(user_id, platform, AGGREGATE_API_TYPE, now)
            if not aggregate.allowed:
                return aggregate
        return status

    async def check_global(self, api_type: str) -> RateLimitStatus:
        """Read today's global bucket; api types without a ceiling always pass."""
        now = self.clock()
        current = int(await self.store.get(self._global_key(api_type, now)) or 0)
        limit = self.global_limits.get(api_type)
        allowed = limit is None or current < limit
        return RateLimitStatus(allowed, current, limit, self._seconds_to_next_day(now))

    async def require(self, user_id: str, platform: str, api_type: str) -> RateLimitStatus:
        """Reserve a call or raise.

        Raises:
            RateLimitExceeded: If the user or global budget is exhausted
        """
        status = await self.reserve(user_id, platform, api_type)
        if not status.allowed:
            raise RateLimitExceeded(
                f"Rate limit reached for {platform}:{user_id}/{api_type}: "
                f"{status.current}/{status.limit}",
                status,
            )
        return status

    # -- writes -----------------------------------------------------------

    async def increment(self, user_id: str, platform: str, api_type: str) -> None:
        """Count one call against the user's hour bucket and the global day bucket."""
        now = self.clock()
        hour_ttl = self._seconds_to_next_hour(now) + 60
        await self.store.incr(self._user_key(user_id, platform, api_type, now), 1, hour_ttl)
        if self._aggregate_applies(api_type):
            await self.store.incr(self._user_key(user_id, platform, AGGREGATE_API_TYPE, now), 1, hour_ttl)
        await self.store.incr(self._global_key(api_type, now), 1, GLOBAL_BUCKET_TTL)
        await self._after_write(now)

    async def reserve(self, user_id: str, platform: str, api_type: str) -> RateLimitStatus:
        """Atomically claim one call from every applicable budget.

        Buckets are claimed in order: api type, ``total_api``, global. If a
        later bucket refuses, the earlier claims are released.

        Returns:
            The refusing bucket's status, or the api type bucket's status when granted
        """
        now = self.clock()
        reset_in = self._seconds_to_next_hour(now)
        hour_ttl = reset_in + 60
        claimed: List[str] = []

        user_buckets = [api_type]
        if self._aggregate_applies(api_type):
            user_buckets.append(AGGREGATE_API_TYPE)

        granted_status: Optional[RateLimitStatus] = None
        for bucket_type in user_buckets:
            key = self._user_key(user_id, platform, bucket_type, now)
            limit = self.limits.get(bucket_type)
            if limit is None:
                current = await self.store.incr(key, 1, hour_ttl)
            else:
                granted, current = await self.store.reserve(key, limit, hour_ttl)
                if not granted:
                    await self._release(claimed)
                    return RateLimitStatus(False, current, limit, reset_in)
            claimed.append(key)
            if granted_status is None:
                granted_status = RateLimitStatus(True, current, limit, reset_in)

        global_key = self._global_key(api_type, now)
        global_limit = self.global_limits.get(api_type)
        if global_limit is None:
            await self.store.incr(global_key, 1, GLOBAL_BUCKET_TTL)
        else:
            granted, current = await self.store.reserve(global_key, global_limit, GLOBAL_BUCKET_TTL)
            if not granted:
                await self._release(claimed)
                log.warning("Global daily limit reached for %s: %d/%d", api_type, current, global_limit)
                return RateLimitStatus(False, current, global_limit, self._seconds_to_next_day(now))

        await self._after_write(now)
        return granted_status

    async def _release(self, keys: List[str]) -> None:
        for key in keys:
            await self.store.incr(key, -1)

    async def _after_write(self, now: datetime) -> None:
        bucket = self._bucket(now)
        if self._swept_bucket != bucket:
            await self.sweep()
            self._swept_bucket = bucket
        await self.persist_snapshot()

    # -- maintenance ------------------------------------------------------

    async def sweep(self) -> int:
        """Delete buckets whose date/hour no longer match the clock.

        Returns:
            Number of buckets removed
        """
        now = self.clock()
        hour_suffix = f":{self._bucket(now)}"
        day_suffix = f":{now.date().isoformat()}"
        removed = 0

        for key in await self.store.scan(RATE_LIMIT_PREFIX):
            if not key.endswith(hour_suffix):
                await self.store.delete(key)
                removed += 1
        for key in await self.store.scan(GLOBAL_USAGE_PREFIX):
            if not key.endswith(day_suffix):
                await self.store.delete(key)
                removed += 1

        if removed:
            log.debug("Swept %d stale rate limit buckets", removed)
        return removed

    async def daily_usage(self) -> Dict[str, int]:
        """Global call count per api type for today."""
        now = self.clock()
        usage = {
            api_type: 0
            for api_type in list(self.limits) + list(self.global_limits)
            if api_type != AGGREGATE_API_TYPE
        }
        day_suffix = f":{now.date().isoformat()}"
        for key in await self.store.scan(GLOBAL_USAGE_PREFIX):
            if key.endswith(day_suffix):
                api_type = key[len(GLOBAL_USAGE_PREFIX):-len(day_suffix)]
                usage[api_type] = int(await self.store.get(key) or 0)
        return usage

    async def usage_stats(self) -> Dict[str, object]:
        """Daily usage, configured limits and number of live user buckets."""
        return {
            "date": self.clock().date().isoformat(),
            "daily": await self.daily_usage(),
            "limits": dict(self.global_limits),
            "hourly_limits": dict(self.limits),
            "rate_limit_entries": len(await self.store.scan(RATE_LIMIT_PREFIX)),
        }

    async def persist_snapshot(self) -> bool:
        """Save today's global counts to the durable tier, best-effort.

        Returns:
            False if no repository is configured or the write failed
        """
        if self.usage_repository is None:
            return False
        day = self.clock().date().isoformat()
        try:
            counts = await self.daily_usage()
            await asyncio.to_thread(self.usage_repository.save_snapshot, day, counts)
            return True
        except Exception as e:
            log.warning("Failed to save daily usage snapshot: %s", e)
            return False

    async def restore(self) -> Dict[str, int]:
        """Reload today's global counts saved by a previous process.

        Counters already ahead of the snapshot are left alone.

        Returns:
            The counts that were loaded
        """
        if self.usage_repository is None:
            return {}
        now = self.clock()
        try:
            saved = await asyncio.to_thread(self.usage_repository.load_snapshot, now.date().isoformat())
        except Exception as e:
            log.info("No usable usage snapshot, starting fresh: %s", e)
            return {}

        for api_type, count in saved.items():
            key = self._global_key(api_type, now)
            current = int(await self.store.get(key) or 0)
            if count > current:
                await self.store.incr(key, count - current, GLOBAL_BUCKET_TTL)
        return saved
