"""
Dispatch Service — イベントゲートウェイ (Server-Sent Events)

接続ごとに Redis Pub/Sub を購読し、受信したメッセージを SSE の
名前付きイベントに変換してそのままクライアントへ流す。

┌──────────┐ PUBLISH ┌───────┐ SUBSCRIBE ┌─────────┐  SSE   ┌─────────┐
│ commands │ ──────▶ │ Redis │ ────────▶ │ gateway │ ─────▶ │ browser │
└──────────┘         └───────┘           └─────────┘        └─────────┘

- 購読は接続単位。クライアント間で共有しない。
- 切断時は必ず unsubscribe + close する(購読・接続のリーク防止)。
- 壊れたメッセージは 1 件単位で捨て、接続は維持する。
"""

import json
import logging
from typing import AsyncIterator, Awaitable, Callable

import anyio
import redis.asyncio as aioredis

from .events import CHANNEL_EVENTS

logger = logging.getLogger(__name__)


def format_event(event: str, data: dict) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def format_retry(retry_ms: int) -> str:
    return f"retry: {retry_ms}\n\n"


def to_frame(message: dict, channel_events: dict[str, str] = CHANNEL_EVENTS) -> str | None:
    """バスのメッセージを SSE フレームにする。対象外・不正なら None。"""
    if message.get("type") != "message":
        return None
    event = channel_events.get(message.get("channel"))
    if event is None:
        return None
    try:
        data = json.loads(message.get("data"))
    except (TypeError, ValueError):
        logger.warning("Dropping malformed message on %s", message.get("channel"))
        return None
    if not isinstance(data, dict):
        logger.warning("Dropping non-object payload on %s", message.get("channel"))
        return None
    return format_event(event, data)


class EventGateway:
    def __init__(
        self,
        redis: aioredis.Redis,
        retry_ms: int = 1000,
        poll_timeout: float = 1.0,
        channel_events: dict[str, str] | None = None,
    ):
        self.redis = redis
        self.retry_ms = retry_ms
        self.poll_timeout = poll_timeout
        self.channel_events = channel_events or CHANNEL_EVENTS

    async def stream(
        self,
        is_disconnected: Callable[[], Awaitable[bool]],
    ) -> AsyncIterator[str]:
        """
        1 接続分の SSE ストリーム。

        最初に retry ヒントを送り、以降は受信したメッセージを即座に流す。
        is_disconnected が True を返すか、ジェネレータが閉じられたら購読を解放する。
        """
        pubsub = self.redis.pubsub()
        channels = list(self.channel_events)

        try:
            await pubsub.subscribe(*channels)
            logger.info("SSE client subscribed to %s", ", ".join(channels))
            yield format_retry(self.retry_ms)
            while not await is_disconnected():
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True, timeout=self.poll_timeout
                )
                if message is None:
                    continue
                frame = to_frame(message, self.channel_events)
                if frame is not None:
                    yield frame
        finally:
            # キャンセル中でも解放まで完了させる
            with anyio.CancelScope(shield=True):
                await pubsub.unsubscribe(*channels)
                await pubsub.aclose()
            logger.info("SSE client disconnected, subscription released")
