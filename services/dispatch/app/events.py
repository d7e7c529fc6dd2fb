"""
Dispatch Service — イベント定義

Redis Pub/Sub に流すドメインイベント。永続化はしない(at-most-once)。
バス上のチャネル名と、SSE でクライアントに見せるイベント名は別に持つ。
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

BOOKING_CONFIRMED_CHANNEL = "booking:confirmed"
PARTNER_GPS_CHANNEL = "partner:gps"

# バスのチャネル → SSE イベント名
CHANNEL_EVENTS = {
    BOOKING_CONFIRMED_CHANNEL: "booking-confirmed",
    PARTNER_GPS_CHANNEL: "partner-gps",
}


class DomainEvent(BaseModel):
    """ワイヤ上では camelCase (bookingId, partnerId)"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class BookingConfirmed(DomainEvent):
    """予約にパートナーが割り当てられた(ASSIGNED)、または確定された(CONFIRMED)"""
    booking_id: str
    partner_id: str | None = None
    status: str


class PartnerGpsUpdated(DomainEvent):
    """パートナーの現在位置が更新された"""
    partner_id: str
    lat: float
    lng: float
