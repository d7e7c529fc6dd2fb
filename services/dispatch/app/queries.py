"""
Dispatch Service — クエリハンドラ (Read 側)

bookings / partners テーブルからの読み取り。状態は変更しない。
"""

import json

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

LIST_LIMIT = 100


def _booking(row) -> dict:
    return {
        "id": row.id,
        "user_id": row.user_id,
        "package_id": row.package_id,
        "city": row.city,
        "latitude": float(row.latitude),
        "longitude": float(row.longitude),
        "status": row.status,
        "assigned_partner_id": row.assigned_partner_id,
        "documents": json.loads(row.documents) if row.documents else [],
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }


def _partner(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "city": row.city,
        "status": row.status,
        "latitude": float(row.latitude),
        "longitude": float(row.longitude),
        "last_gps_at": row.last_gps_at,
    }


async def get_booking(session: AsyncSession, booking_id: str) -> dict | None:
    """予約を 1 件取得する。"""
    result = await session.execute(
        text("SELECT * FROM bookings WHERE id = :id"),
        {"id": booking_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _booking(row)


async def list_bookings(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM bookings ORDER BY created_at DESC LIMIT :limit"),
        {"limit": LIST_LIMIT},
    )
    return [_booking(row) for row in result.fetchall()]


async def get_partner(session: AsyncSession, partner_id: str) -> dict | None:
    result = await session.execute(
        text("SELECT * FROM partners WHERE id = :id"),
        {"id": partner_id},
    )
    row = result.fetchone()
    if not row:
        return None
    return _partner(row)


async def list_partners(session: AsyncSession) -> list[dict]:
    result = await session.execute(
        text("SELECT * FROM partners ORDER BY id LIMIT :limit"),
        {"limit": LIST_LIMIT},
    )
    return [_partner(row) for row in result.fetchall()]


async def list_online_partners(session: AsyncSession) -> list[dict]:
    """
    マッチング候補(status = 'online')を id 順に返す。

    同距離のときは先に現れた候補が勝つので、並び順を固定しておく。
    """
    result = await session.execute(
        text("SELECT * FROM partners WHERE status = 'online' ORDER BY id"),
    )
    return [_partner(row) for row in result.fetchall()]
