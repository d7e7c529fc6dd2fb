"""
Dispatch Service — 距離計算

haversine 式による大圏距離(km)。パートナー選定のランキング関数として使う。
"""

import math
from typing import NamedTuple

EARTH_RADIUS_KM = 6371.0


class Coordinates(NamedTuple):
    lat: float
    lng: float


def haversine_km(a: Coordinates, b: Coordinates) -> float:
    """2 点間の大圏距離を km で返す。同一点なら 0、引数の順序に依存しない。"""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    d_lat = lat2 - lat1
    d_lng = math.radians(b.lng - a.lng)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(h), math.sqrt(1 - h))
