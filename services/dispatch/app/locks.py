"""
Dispatch Service — 分散ロック

Redis 上のキー単位の排他ロック。複数インスタンスから同じ予約に対する
割り当てが同時に走っても、クリティカルセクションに入れるのは 1 つだけ。

  取得: SET key token PX ttl NX      (1 往復で「なければセット」)
  解放: EVAL compare-and-delete       (自分のトークンの場合だけ削除)

TTL はクリティカルセクションの上限。超過するとロックは失効し、
他の呼び出しが取得できてしまう。TTL 近くまで保持している前提で
書いてはいけない。

ストアに到達できない場合の挙動はポリシーで選ぶ:
  strict   : LockUnavailable を送出して処理を失敗させる
  degraded : 警告を出してロックなしで続行する(条件付き更新が最後の砦)
"""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .errors import LockBusy, LockUnavailable

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"

# GET と DEL の間に TTL 失効 → 他者の取得 が挟まらないよう、サーバ側で原子的に比較削除する
RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class LockManager:
    """共有 Redis ハンドルを受け取り、キー単位のロックを提供する。"""

    def __init__(
        self,
        redis: aioredis.Redis,
        default_ttl_ms: int = 5000,
        policy: str = "strict",
    ):
        self.redis = redis
        self.default_ttl_ms = default_ttl_ms
        self.policy = policy

    async def acquire(self, key: str, ttl_ms: int | None = None) -> str:
        """
        ロックを取得してトークンを返す。

        他者が保持中なら LockBusy。ストア障害は RedisError のまま送出する
        (ポリシーの判断は hold() が行う)。
        """
        token = secrets.token_hex(16)
        acquired = await self.redis.set(
            LOCK_PREFIX + key,
            token,
            px=ttl_ms or self.default_ttl_ms,
            nx=True,
        )
        if not acquired:
            raise LockBusy(f"lock {key} is held")
        return token

    async def release(self, key: str, token: str) -> bool:
        """トークンが一致する場合だけ削除する。不一致・失効済みなら何もしない。"""
        deleted = await self.redis.eval(RELEASE_SCRIPT, 1, LOCK_PREFIX + key, token)
        return bool(deleted)

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        ttl_ms: int | None = None,
        policy: str | None = None,
    ) -> AsyncIterator[str | None]:
        """
        クリティカルセクション用のコンテキストマネージャ。

        ブロック内で例外が起きても必ず解放する。degraded でロックなしに
        続行した場合は None を yield する。
        """
        policy = policy or self.policy
        try:
            token = await self.acquire(key, ttl_ms)
        except RedisError as e:
            if policy != "degraded":
                raise LockUnavailable(f"lock store unreachable: {e}") from e
            logger.warning("Lock store unreachable, proceeding without lock %s: %s", key, e)
            yield None
            return

        try:
            yield token
        finally:
            try:
                await self.release(key, token)
            except RedisError:
                # 解放できなくても TTL で失効する
                logger.warning("Failed to release lock %s; it will expire", key, exc_info=True)
