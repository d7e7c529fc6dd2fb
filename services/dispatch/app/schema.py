"""
Dispatch Service — テーブル定義

bookings / partners の 2 テーブル。起動時に冪等に作成する。
タイムスタンプは ISO-8601 (UTC) 文字列、書類リストは JSON 文字列で持つ。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS bookings (
        id                  TEXT PRIMARY KEY,
        user_id             TEXT,
        package_id          TEXT,
        city                TEXT,
        latitude            DOUBLE PRECISION NOT NULL,
        longitude           DOUBLE PRECISION NOT NULL,
        status              TEXT NOT NULL DEFAULT 'PENDING',
        assigned_partner_id TEXT,
        documents           TEXT NOT NULL DEFAULT '[]',
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS partners (
        id          TEXT PRIMARY KEY,
        name        TEXT NOT NULL,
        city        TEXT,
        status      TEXT NOT NULL DEFAULT 'offline',
        latitude    DOUBLE PRECISION NOT NULL,
        longitude   DOUBLE PRECISION NOT NULL,
        last_gps_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_partners_status ON partners (status)",
    # 位置インデックス: 現状の haversine 全件走査には不要、将来の範囲検索用
    "CREATE INDEX IF NOT EXISTS ix_partners_location ON partners (latitude, longitude)",
    "CREATE INDEX IF NOT EXISTS ix_bookings_user_id ON bookings (user_id)",
    "CREATE INDEX IF NOT EXISTS ix_bookings_status ON bookings (status)",
]


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
