"""
Dispatch Service — イベント発行

ベストエフォートの Redis Pub/Sub 発行。発行に失敗しても、
既にコミット済みの業務処理は失敗させない(ログを残して続行)。

注意: Pub/Sub は fire-and-forget。購読者がいない・切断中の間の
イベントは失われる。再送やリプレイが必要なら別の仕組み(Streams 等)にする。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import DomainEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, channel: str, event: DomainEvent | dict) -> bool:
        """発行できたら True。失敗は警告ログのみで例外は送出しない。"""
        payload = event.to_payload() if isinstance(event, DomainEvent) else event
        try:
            receivers = await self.redis.publish(channel, json.dumps(payload, default=str))
        except (RedisError, OSError) as e:
            logger.warning("Failed to publish to %s: %s", channel, e)
            return False
        logger.debug("Published to %s (%s receivers)", channel, receivers)
        return True
