"""
Dispatch Service — コマンドハンドラ (Write 側)

予約へのパートナー割り当て、確定、パートナーの位置・状態更新を扱う。
予約の割り当てフィールドを書き換えるのはこのモジュールだけで、
必ず条件付き UPDATE (WHERE に前提条件を含める) で行う。

割り当てのフロー:
  1. booking:<id>:assign のロックを取得 (取れなければ LockBusy)
  2. 予約を読み直す (NotFound / AlreadyAssigned)
  3. 最寄りのオンラインパートナーを選ぶ (NoOnlinePartner)
  4. assigned_partner_id IS NULL を条件に UPDATE (0 件なら Conflict)
  5. ロック解放 → booking:confirmed に発行
"""

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from . import matching, queries
from .errors import (
    AlreadyAssigned,
    AlreadyConfirmed,
    AssignmentConflict,
    BookingNotFound,
    DocumentsNotApproved,
    NotAssigned,
    NotFound,
    PartnerNotFound,
    RateLimited,
)
from .events import (
    BOOKING_CONFIRMED_CHANNEL,
    PARTNER_GPS_CHANNEL,
    BookingConfirmed,
    PartnerGpsUpdated,
)
from .geo import Coordinates
from .locks import LockManager
from .publisher import EventPublisher
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── 割り当て ──────────────────────────────────────


async def assign_booking(
    session: AsyncSession,
    locks: LockManager,
    publisher: EventPublisher,
    booking_id: str,
    ttl_ms: int | None = None,
) -> str:
    """
    予約に最寄りのパートナーを割り当て、その partner_id を返す。

    ロックは予約単位。別の予約の割り当てとは競合しない。
    サーバ側ではリトライしない(LockBusy / Conflict は呼び出し側に返す)。
    """
    async with locks.hold(f"booking:{booking_id}:assign", ttl_ms):
        try:
            partner_id = await _assign_nearest(session, booking_id)
        except Exception:
            await session.rollback()
            raise

    logger.info("Assigned partner %s to booking %s", partner_id, booking_id)
    await publisher.publish(
        BOOKING_CONFIRMED_CHANNEL,
        BookingConfirmed(booking_id=booking_id, partner_id=partner_id, status="ASSIGNED"),
    )
    return partner_id


async def _assign_nearest(session: AsyncSession, booking_id: str) -> str:
    booking = await queries.get_booking(session, booking_id)
    if not booking:
        raise BookingNotFound(f"booking {booking_id} not found")
    if booking["assigned_partner_id"] or booking["status"] != "PENDING":
        raise AlreadyAssigned(f"booking {booking_id} is {booking['status']}")

    origin = Coordinates(booking["latitude"], booking["longitude"])
    partner = await matching.select_partner(session, origin)

    # ロックが縮退・失効していても二重割り当てにならないよう、条件を UPDATE 自体に含める
    result = await session.execute(
        text("""
            UPDATE bookings
            SET assigned_partner_id = :partner_id, status = 'ASSIGNED', updated_at = :now
            WHERE id = :id AND assigned_partner_id IS NULL AND status = 'PENDING'
        """),
        {"id": booking_id, "partner_id": partner["id"], "now": _now()},
    )
    if result.rowcount == 0:
        raise AssignmentConflict(f"booking {booking_id} changed during assignment")

    await session.commit()
    return partner["id"]


# ── 確定 ──────────────────────────────────────────


async def confirm_booking(
    session: AsyncSession,
    locks: LockManager,
    publisher: EventPublisher,
    booking_id: str,
    ttl_ms: int | None = None,
) -> dict:
    """
    割り当て済みの予約を確定する。

    書類がすべて APPROVED であることが条件。
    """
    async with locks.hold(f"booking:{booking_id}:confirm", ttl_ms):
        try:
            booking = await _confirm(session, booking_id)
        except Exception:
            await session.rollback()
            raise

    logger.info("Confirmed booking %s", booking_id)
    await publisher.publish(
        BOOKING_CONFIRMED_CHANNEL,
        BookingConfirmed(
            booking_id=booking_id,
            partner_id=booking["assigned_partner_id"],
            status="CONFIRMED",
        ),
    )
    return booking


async def _confirm(session: AsyncSession, booking_id: str) -> dict:
    booking = await queries.get_booking(session, booking_id)
    if not booking:
        raise BookingNotFound(f"booking {booking_id} not found")
    if booking["status"] == "CONFIRMED":
        raise AlreadyConfirmed(f"booking {booking_id} already confirmed")
    if booking["status"] != "ASSIGNED":
        raise NotAssigned(f"booking {booking_id} is {booking['status']}")
    documents = booking["documents"]
    if not documents or any(d.get("status") != "APPROVED" for d in documents):
        raise DocumentsNotApproved(f"booking {booking_id} has unapproved documents")

    now = _now()
    result = await session.execute(
        text("""
            UPDATE bookings
            SET status = 'CONFIRMED', updated_at = :now
            WHERE id = :id AND status = 'ASSIGNED'
        """),
        {"id": booking_id, "now": now},
    )
    if result.rowcount == 0:
        raise AssignmentConflict(f"booking {booking_id} changed during confirmation")

    await session.commit()
    booking.update(status="CONFIRMED", updated_at=now)
    return booking


# ── 書類 ──────────────────────────────────────────


async def replace_documents(
    session: AsyncSession,
    booking_id: str,
    documents: list[dict],
) -> None:
    result = await session.execute(
        text("UPDATE bookings SET documents = :documents, updated_at = :now WHERE id = :id"),
        {"id": booking_id, "documents": json.dumps(documents), "now": _now()},
    )
    if result.rowcount == 0:
        raise NotFound(f"booking {booking_id} not found")
    await session.commit()


async def approve_documents(session: AsyncSession, booking_id: str) -> list[dict]:
    """添付書類をすべて APPROVED にする。"""
    booking = await queries.get_booking(session, booking_id)
    if not booking:
        raise NotFound(f"booking {booking_id} not found")
    documents = [{**d, "status": "APPROVED"} for d in booking["documents"]]
    await replace_documents(session, booking_id, documents)
    return documents


# ── パートナー ────────────────────────────────────


async def update_partner_gps(
    session: AsyncSession,
    limiter: RateLimiter,
    publisher: EventPublisher,
    partner_id: str,
    lat: float,
    lng: float,
    max_count: int = 6,
    window_seconds: int = 60,
) -> None:
    """
    パートナーの現在位置を更新し、partner:gps に発行する。

    各パートナーは自分のレコードだけを更新するので、単一行 UPDATE で十分。
    """
    if not await limiter.allow(f"gps:{partner_id}", max_count, window_seconds):
        raise RateLimited(f"gps updates for {partner_id} exceed {max_count}/{window_seconds}s")

    result = await session.execute(
        text("""
            UPDATE partners
            SET latitude = :lat, longitude = :lng, last_gps_at = :now
            WHERE id = :id
        """),
        {"id": partner_id, "lat": lat, "lng": lng, "now": _now()},
    )
    if result.rowcount == 0:
        raise PartnerNotFound(f"partner {partner_id} not found")
    await session.commit()

    await publisher.publish(
        PARTNER_GPS_CHANNEL,
        PartnerGpsUpdated(partner_id=partner_id, lat=lat, lng=lng),
    )


async def set_partner_status(session: AsyncSession, partner_id: str, status: str) -> None:
    """オンライン / オフライン切り替え"""
    result = await session.execute(
        text("UPDATE partners SET status = :status WHERE id = :id"),
        {"id": partner_id, "status": status},
    )
    if result.rowcount == 0:
        raise PartnerNotFound(f"partner {partner_id} not found")
    await session.commit()
