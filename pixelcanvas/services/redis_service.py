"""
Pixel Canvas - Redis Service
Short-lived area locks, request rate limits and small shared state.
"""
import json
import logging
import secrets
import time
from dataclasses import dataclass, asdict
from typing import List, Optional

import redis.asyncio as redis

from pixelcanvas.core.config import settings
from pixelcanvas.core.errors import RateLimitedError

logger = logging.getLogger(__name__)


@dataclass
class AreaLock:
    lock_id: str
    x: int
    y: int
    width: int
    height: int
    owner: str
    expires_at: float  # unix time

    def overlaps(self, x: int, y: int, width: int, height: int) -> bool:
        return (
            self.x < x + width and self.x + self.width > x and
            self.y < y + height and self.y + self.height > y
        )

    def to_dict(self) -> dict:
        return asdict(self)


class RedisService:
    """Redis-backed coordination shared by every API instance"""

    LOCK_INDEX = "area_locks"
    LOCK_MUTEX = "area_locks:mutex"
    RATE_PREFIX = "ratelimit:"

    def __init__(self):
        self._client: Optional[redis.Redis] = None

    async def connect(self):
        """Lazily create the shared client"""
        if not self._client:
            self._client = redis.from_url(
                settings.REDIS_URL,
                encoding="utf-8",
                decode_responses=True
            )
        return self._client

    async def disconnect(self):
        """Disconnect from Redis"""
        if self._client:
            await self._client.aclose()
            self._client = None

    # ============================================================
    # AREA LOCKS
    # ============================================================

    async def _active_locks(self, client) -> List[AreaLock]:
        """Current locks; expired entries are dropped on the way"""
        now = time.time()
        raw = await client.hgetall(self.LOCK_INDEX)
        active, expired = [], []
        for lock_id, data in raw.items():
            lock = AreaLock(**json.loads(data))
            (active if lock.expires_at > now else expired).append(lock)
        if expired:
            await client.hdel(self.LOCK_INDEX, *[lock.lock_id for lock in expired])
        return active

    async def get_locks(self) -> List[AreaLock]:
        client = await self.connect()
        return await self._active_locks(client)

    async def lock_area(
        self,
        x: int,
        y: int,
        width: int,
        height: int,
        owner: str,
        ttl: Optional[int] = None
    ) -> Optional[AreaLock]:
        """
        Hold an area while its owner uploads and pays.
        Returns None when another lock covers part of the area.
        """
        ttl = ttl or settings.AREA_LOCK_SECONDS
        client = await self.connect()

        async with client.lock(self.LOCK_MUTEX, timeout=10, blocking_timeout=5):
            locks = await self._active_locks(client)

            owned = [lock for lock in locks if lock.owner == owner]
            if len(owned) >= settings.MAX_LOCKS_PER_WALLET:
                raise RateLimitedError(
                    f"At most {settings.MAX_LOCKS_PER_WALLET} area locks per wallet",
                    {"active_locks": [lock.lock_id for lock in owned]}
                )

            if any(lock.overlaps(x, y, width, height) for lock in locks):
                return None

            lock = AreaLock(
                lock_id=secrets.token_hex(8),
                x=x,
                y=y,
                width=width,
                height=height,
                owner=owner,
                expires_at=time.time() + ttl,
            )
            await client.hset(self.LOCK_INDEX, lock.lock_id, json.dumps(lock.to_dict()))
            # Index lives as long as its longest lock
            longest = max(l.expires_at for l in locks + [lock])
            await client.expire(self.LOCK_INDEX, int(longest - time.time()) + 1)

        logger.info(f"Area lock {lock.lock_id} at ({x}, {y}) {width}x{height} for {owner}")
        return lock

    async def release_lock(self, lock_id: str, owner: Optional[str] = None) -> bool:
        """Release a lock; False when it is gone or held by someone else"""
        client = await self.connect()
        async with client.lock(self.LOCK_MUTEX, timeout=10, blocking_timeout=5):
            data = await client.hget(self.LOCK_INDEX, lock_id)
            if not data:
                return False
            if owner and json.loads(data)["owner"] != owner:
                return False
            await client.hdel(self.LOCK_INDEX, lock_id)
        return True

    async def overlapping_locks(self, x: int, y: int, width: int, height: int, owner: Optional[str] = None) -> List[AreaLock]:
        """Locks held by anyone other than owner that intersect the area"""
        locks = await self.get_locks()
        return [
            lock for lock in locks
            if lock.overlaps(x, y, width, height) and lock.owner != owner
        ]

    # ============================================================
    # RATE LIMITS
    # ============================================================

    async def hit_rate_limit(self, key: str, limit: int, window: int = 60) -> bool:
        """Count one request in a fixed window; False once over the limit"""
        client = await self.connect()
        redis_key = f"{self.RATE_PREFIX}{key}"
        count = await client.incr(redis_key)
        if count == 1:
            await client.expire(redis_key, window)
        if count > limit:
            logger.warning(f"Rate limit hit for {key}: {count}/{limit}")
            return False
        return True

    # ============================================================
    # STATE
    # ============================================================

    async def set_state(self, key: str, value: dict, expire: int = 3600):
        """Store a JSON blob such as the last sweep report"""
        client = await self.connect()
        await client.setex(key, expire, json.dumps(value))

    async def get_state(self, key: str) -> Optional[dict]:
        """JSON blob stored by set_state, or None"""
        client = await self.connect()
        data = await client.get(key)
        if data:
            return json.loads(data)
        return None


redis_service = RedisService()
