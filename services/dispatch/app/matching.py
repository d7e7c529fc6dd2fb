"""
Dispatch Service — パートナーマッチング

配送先座標から最も近いオンラインのパートナーを選ぶ。読み取りと計算のみで、
予約・パートナーの状態は変更しない。
"""

from sqlalchemy.ext.asyncio import AsyncSession

from . import queries
from .errors import NoOnlinePartner
from .geo import Coordinates, haversine_km


def nearest(origin: Coordinates, candidates: list[dict]) -> tuple[dict, float]:
    """
    候補の中で origin に最も近いものと、その距離(km)を返す。

    同距離なら候補リストで先に現れたものが勝つ(min は安定)。
    """
    if not candidates:
        raise NoOnlinePartner("no online partner")
    ranked = (
        (haversine_km(origin, Coordinates(p["latitude"], p["longitude"])), p)
        for p in candidates
    )
    distance, partner = min(ranked, key=lambda r: r[0])
    return partner, distance


async def select_partner(session: AsyncSession, origin: Coordinates) -> dict:
    """オンラインのパートナーから最寄りを選ぶ。候補がなければ NoOnlinePartner。"""
    candidates = await queries.list_online_partners(session)
    partner, _ = nearest(origin, candidates)
    return partner
