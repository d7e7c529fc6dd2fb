"""
Dispatch Service — レートリミッター (固定ウィンドウ)

rl:<key>:<window-index> のカウンタを INCR し、同じ MULTI/EXEC の中で
EXPIRE NX を設定する(ウィンドウ内の最初のインクリメントでだけ効く)。
インクリメント後の値が上限以下なら許可。EXPIRE NX は Redis 7 以上。
"""

import logging
import time
from typing import Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class RateLimiter:
    def __init__(
        self,
        redis: aioredis.Redis,
        policy: str = "open",
        clock: Callable[[], float] = time.time,
    ):
        self.redis = redis
        self.policy = policy
        self.clock = clock

    def bucket_key(self, key: str, window_seconds: int) -> str:
        return f"rl:{key}:{int(self.clock() // window_seconds)}"

    async def allow(self, key: str, max_count: int, window_seconds: int) -> bool:
        """
        呼び出しを許可するなら True。

        ストアに到達できない場合、policy="open" なら許可、"closed" なら拒否する。
        """
        window_key = self.bucket_key(key, window_seconds)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.incr(window_key)
                pipe.expire(window_key, window_seconds, nx=True)
                count, _ = await pipe.execute()
        except RedisError as e:
            allowed = self.policy == "open"
            logger.warning(
                "Rate limit store unreachable for %s (%s), %s",
                key, e, "allowing" if allowed else "rejecting",
            )
            return allowed
        return count <= max_count
