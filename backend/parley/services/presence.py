"""Heartbeat-based presence, backed by Redis.

Each user has one key ``presence:{user_id}`` holding the instant of the last
heartbeat. The key carries a TTL of one liveness window, so a record that is
never swept still disappears on its own. Liveness itself is decided against
the injected clock, which keeps the window testable without sleeping.
"""
import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta

from redis.asyncio import Redis
from redis.exceptions import WatchError

from parley.config import settings
from parley.models.base import utcnow

logger = logging.getLogger(__name__)

PRESENCE_KEY_PREFIX = "presence:"


def _key(user_id: uuid.UUID) -> str:
    return f"{PRESENCE_KEY_PREFIX}{user_id}"


class RedisPresenceStore:
    def __init__(self, redis: Redis):
        self.redis = redis

    async def touch(self, user_id: uuid.UUID, seen_at: datetime, ttl_seconds: int) -> None:
        await self.redis.set(_key(user_id), seen_at.isoformat(), ex=ttl_seconds)

    async def get(self, user_id: uuid.UUID) -> datetime | None:
        raw = await self.redis.get(_key(user_id))
        return datetime.fromisoformat(raw) if raw else None

    async def all(self) -> dict[uuid.UUID, str]:
        """Raw last-seen values of every stored record."""
        keys = [key async for key in self.redis.scan_iter(match=f"{PRESENCE_KEY_PREFIX}*")]
        if not keys:
            return {}
        values = await self.redis.mget(keys)
        records = {}
        for key, raw in zip(keys, values):
            if raw is None:
                continue
            try:
                records[uuid.UUID(key[len(PRESENCE_KEY_PREFIX):])] = raw
            except ValueError:
                logger.warning("Ignoring malformed presence key %s", key)
        return records

    async def remove_if_unchanged(self, user_id: uuid.UUID, expected: str) -> bool:
        """Delete the record unless a heartbeat replaced it in the meantime."""
        key = _key(user_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != expected:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
            except WatchError:
                return False
        return True


class PresenceTracker:
    def __init__(
        self,
        store: RedisPresenceStore,
        clock: Callable[[], datetime] = utcnow,
        window_seconds: int | None = None,
    ):
        self.store = store
        self.clock = clock
        self.window_seconds = window_seconds or settings.presence_window_seconds

    @property
    def window(self) -> timedelta:
        return timedelta(seconds=self.window_seconds)

    def _alive(self, seen_at: datetime, now: datetime) -> bool:
        return now - seen_at < self.window

    async def heartbeat(self, user_id: uuid.UUID) -> None:
        await self.store.touch(user_id, self.clock(), self.window_seconds)

    async def is_online(self, user_id: uuid.UUID) -> bool:
        seen_at = await self.store.get(user_id)
        return seen_at is not None and self._alive(seen_at, self.clock())

    async def all_presence(self) -> dict[uuid.UUID, bool]:
        now = self.clock()
        return {
            user_id: self._alive(datetime.fromisoformat(raw), now)
            for user_id, raw in (await self.store.all()).items()
        }

    async def sweep(self) -> list[uuid.UUID]:
        """Remove records older than the window; returns the expired users."""
        now = self.clock()
        expired = []
        for user_id, raw in (await self.store.all()).items():
            if self._alive(datetime.fromisoformat(raw), now):
                continue
            if await self.store.remove_if_unchanged(user_id, raw):
                expired.append(user_id)
        if expired:
            logger.info("Presence sweep expired %d users", len(expired))
        return expired
