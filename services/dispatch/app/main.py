"""
Dispatch Service — FastAPI エントリーポイント

予約へのパートナー割り当て(最寄りマッチング + 分散ロック)と、
割り当て・GPS 更新をブラウザへ流すイベントストリーム(SSE)を提供する。

┌──────────┐  POST /bookings/{id}/assign   ┌──────────────────┐
│ Admin UI │ ────────────────────────────▶ │ Dispatch Service │──▶ DB
└────▲─────┘                               └───┬──────────▲───┘
     │            GET /events (SSE)            │ PUBLISH  │ SUBSCRIBE
     └─────────────────────────────────────────┴─ Redis ──┘

Redis ハンドル・DB エンジン・各コンポーネントは lifespan で生成して
app.state に置き、Depends で各ハンドラに注入する。テストでは
app.state を差し替える。
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from . import commands, queries, schema, seed
from .config import Settings
from .errors import DispatchError, NotFound
from .gateway import EventGateway
from .locks import LockManager
from .publisher import EventPublisher
from .rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def wire(app: FastAPI, settings: Settings, redis: aioredis.Redis, engine) -> None:
    """共有ハンドルから各コンポーネントを組み立てて app.state に置く。"""
    app.state.settings = settings
    app.state.redis = redis
    app.state.engine = engine
    app.state.session_factory = sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False
    )
    app.state.locks = LockManager(redis, settings.lock_ttl_ms, settings.lock_policy)
    app.state.limiter = RateLimiter(redis, settings.rate_limit_policy)
    app.state.publisher = EventPublisher(redis)
    app.state.gateway = EventGateway(redis, retry_ms=settings.sse_retry_ms)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    engine = create_async_engine(settings.database_url, echo=False)
    redis = aioredis.from_url(settings.redis_url, decode_responses=True)
    await schema.create_schema(engine)
    wire(app, settings, redis, engine)
    logger.info("Dispatch service started (lock policy=%s)", settings.lock_policy)
    yield
    await redis.aclose()
    await engine.dispose()


app = FastAPI(title="Dispatch Service", lifespan=lifespan)


@app.exception_handler(DispatchError)
async def dispatch_error_handler(_request: Request, exc: DispatchError):
    return JSONResponse({"error": exc.code}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse({"error": "SERVER_ERROR"}, status_code=500)


# ── Dependencies ─────────────────────────────────


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    async with request.app.state.session_factory() as session:
        yield session


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_locks(request: Request) -> LockManager:
    return request.app.state.locks


def get_limiter(request: Request) -> RateLimiter:
    return request.app.state.limiter


def get_publisher(request: Request) -> EventPublisher:
    return request.app.state.publisher


def get_gateway(request: Request) -> EventGateway:
    return request.app.state.gateway


# ── Request Models ───────────────────────────────


class BookingDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    doc_type: str
    doc_link: str
    status: Literal["PENDING", "APPROVED", "REJECTED"] = "PENDING"


class DocumentsRequest(BaseModel):
    documents: list[BookingDocument]


class GpsUpdateRequest(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class PartnerStatusRequest(BaseModel):
    status: Literal["online", "offline", "suspended"]


# ── Booking Commands ─────────────────────────────


@app.post("/bookings/{booking_id}/assign")
async def cmd_assign_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
    locks: LockManager = Depends(get_locks),
    publisher: EventPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
):
    """最寄りのオンラインパートナーを割り当てる"""
    partner_id = await commands.assign_booking(
        session, locks, publisher, booking_id, settings.lock_ttl_ms
    )
    return {"partnerId": partner_id}


@app.post("/bookings/{booking_id}/confirm")
async def cmd_confirm_booking(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
    locks: LockManager = Depends(get_locks),
    publisher: EventPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
):
    """割り当て済みの予約を確定する(書類承認済みが条件)"""
    await commands.confirm_booking(
        session, locks, publisher, booking_id, settings.lock_ttl_ms
    )
    return {"ok": True}


@app.put("/bookings/{booking_id}/documents")
async def cmd_replace_documents(
    booking_id: str,
    req: DocumentsRequest,
    session: AsyncSession = Depends(get_session),
):
    documents = [d.model_dump(by_alias=True) for d in req.documents]
    await commands.replace_documents(session, booking_id, documents)
    return {"ok": True}


@app.post("/bookings/{booking_id}/approve-docs")
async def cmd_approve_documents(
    booking_id: str,
    session: AsyncSession = Depends(get_session),
):
    documents = await commands.approve_documents(session, booking_id)
    return {"ok": True, "documents": documents}


# ── Partner Commands ─────────────────────────────


@app.post("/partners/{partner_id}/gps")
async def cmd_update_gps(
    partner_id: str,
    req: GpsUpdateRequest,
    session: AsyncSession = Depends(get_session),
    limiter: RateLimiter = Depends(get_limiter),
    publisher: EventPublisher = Depends(get_publisher),
    settings: Settings = Depends(get_settings),
):
    """パートナーの現在位置を更新する(レート制限あり)"""
    await commands.update_partner_gps(
        session, limiter, publisher, partner_id, req.lat, req.lng,
        settings.gps_rate_limit, settings.gps_rate_window_seconds,
    )
    return {"ok": True}


@app.post("/partners/{partner_id}/status")
async def cmd_set_partner_status(
    partner_id: str,
    req: PartnerStatusRequest,
    session: AsyncSession = Depends(get_session),
):
    await commands.set_partner_status(session, partner_id, req.status)
    return {"ok": True, "status": req.status}


# ── Queries ──────────────────────────────────────


@app.get("/bookings")
async def query_list_bookings(session: AsyncSession = Depends(get_session)):
    return await queries.list_bookings(session)


@app.get("/bookings/{booking_id}")
async def query_get_booking(booking_id: str, session: AsyncSession = Depends(get_session)):
    booking = await queries.get_booking(session, booking_id)
    if not booking:
        raise NotFound(f"booking {booking_id} not found")
    return booking


@app.get("/partners")
async def query_list_partners(session: AsyncSession = Depends(get_session)):
    return await queries.list_partners(session)


# ── Event Stream ─────────────────────────────────


@app.get("/events")
async def stream_events(request: Request, gateway: EventGateway = Depends(get_gateway)):
    """booking-confirmed / partner-gps を SSE で流し続ける"""
    return StreamingResponse(
        gateway.stream(request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache, no-transform", "Connection": "keep-alive"},
    )


# ── Seed (学習・デバッグ用) ──────────────────────


@app.post("/seed")
async def seed_data(request: Request, session: AsyncSession = Depends(get_session)):
    await schema.create_schema(request.app.state.engine)
    return await seed.seed_demo_data(session)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "dispatch-service"}
