"""
Dispatch Service — 設定

環境変数を起動時に一度だけ読み込み、不変の Settings にまとめる。
Settings は app.state.settings に置かれ、各コンポーネントへ注入される。
"""

import os
from dataclasses import dataclass

LOCK_POLICIES = ("strict", "degraded")
RATE_LIMIT_POLICIES = ("open", "closed")


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    lock_ttl_ms: int = 5000
    lock_policy: str = "strict"
    rate_limit_policy: str = "open"
    gps_rate_limit: int = 6
    gps_rate_window_seconds: int = 60
    sse_retry_ms: int = 1000
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.lock_policy not in LOCK_POLICIES:
            raise ValueError(f"LOCK_POLICY must be one of {LOCK_POLICIES}")
        if self.rate_limit_policy not in RATE_LIMIT_POLICIES:
            raise ValueError(
                f"RATE_LIMIT_POLICY must be one of {RATE_LIMIT_POLICIES}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から Settings を組み立てる。DATABASE_URL のみ必須。"""
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL", "redis://localhost:6379"),
            lock_ttl_ms=int(os.environ.get("LOCK_TTL_MS", "5000")),
            lock_policy=os.environ.get("LOCK_POLICY", "strict").strip().lower(),
            rate_limit_policy=os.environ.get("RATE_LIMIT_POLICY", "open")
            .strip()
            .lower(),
            gps_rate_limit=int(os.environ.get("GPS_RATE_LIMIT", "6")),
            gps_rate_window_seconds=int(
                os.environ.get("GPS_RATE_WINDOW_SECONDS", "60")
            ),
            sse_retry_ms=int(os.environ.get("SSE_RETRY_MS", "1000")),
            log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
        )
