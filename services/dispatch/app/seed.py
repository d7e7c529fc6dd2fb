"""
Dispatch Service — デモデータ投入

bookings / partners を空にしてサンプルを入れ直す(ローカル確認・学習用)。
insert_* はテストの前提データ作成にも使う。
"""

import json
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

APPROVED_DOCUMENTS = [
    {"docType": "SELFIE", "docLink": "https://example.com/user/selfie/sample.jpg", "status": "APPROVED"},
    {"docType": "SIGNATURE", "docLink": "https://example.com/user/signature/sample.jpg", "status": "APPROVED"},
]


async def insert_partners(session: AsyncSession, partners: list[dict]) -> list[str]:
    """パートナーをまとめて追加し、id のリストを返す。"""
    rows = [
        {
            "id": p.get("id") or uuid4().hex,
            "name": p["name"],
            "city": p.get("city"),
            "status": p.get("status", "offline"),
            "latitude": p["latitude"],
            "longitude": p["longitude"],
            "last_gps_at": p.get("last_gps_at"),
        }
        for p in partners
    ]
    if rows:
        await session.execute(
            text("""
                INSERT INTO partners (id, name, city, status, latitude, longitude, last_gps_at)
                VALUES (:id, :name, :city, :status, :latitude, :longitude, :last_gps_at)
            """),
            rows,
        )
    await session.commit()
    return [r["id"] for r in rows]


async def insert_bookings(session: AsyncSession, bookings: list[dict]) -> list[str]:
    """予約をまとめて追加し、id のリストを返す。"""
    now = datetime.now(timezone.utc).isoformat()
    rows = [
        {
            "id": b.get("id") or uuid4().hex,
            "user_id": b.get("user_id"),
            "package_id": b.get("package_id"),
            "city": b.get("city"),
            "latitude": b["latitude"],
            "longitude": b["longitude"],
            "status": b.get("status", "PENDING"),
            "assigned_partner_id": b.get("assigned_partner_id"),
            "documents": json.dumps(b.get("documents", [])),
            "now": now,
        }
        for b in bookings
    ]
    if rows:
        await session.execute(
            text("""
                INSERT INTO bookings
                    (id, user_id, package_id, city, latitude, longitude, status,
                     assigned_partner_id, documents, created_at, updated_at)
                VALUES
                    (:id, :user_id, :package_id, :city, :latitude, :longitude, :status,
                     :assigned_partner_id, :documents, :now, :now)
            """),
            rows,
        )
    await session.commit()
    return [r["id"] for r in rows]


async def reset(session: AsyncSession) -> None:
    await session.execute(text("DELETE FROM bookings"))
    await session.execute(text("DELETE FROM partners"))
    await session.commit()


async def seed_demo_data(session: AsyncSession) -> dict:
    """全件削除してから、ムンバイのパートナー 3 人と PENDING の予約 2 件を入れる。"""
    await reset(session)
    partner_ids = await insert_partners(session, [
        {"name": "Test Partner", "city": "mumbai", "status": "online", "latitude": 19.2, "longitude": 72.82},
        {"name": "Near Partner", "city": "mumbai", "status": "online", "latitude": 19.203, "longitude": 72.828},
        {"name": "Offline Partner", "city": "mumbai", "status": "offline", "latitude": 19.18, "longitude": 72.8},
    ])
    booking_ids = await insert_bookings(session, [
        {
            "city": "mumbai",
            "latitude": 19.203258,
            "longitude": 72.8278919,
            "documents": APPROVED_DOCUMENTS,
        },
        {
            "city": "mumbai",
            "latitude": 19.117,
            "longitude": 72.846,
            "documents": APPROVED_DOCUMENTS,
        },
    ])
    return {"partners": partner_ids, "bookings": booking_ids}
