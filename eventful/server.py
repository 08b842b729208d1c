from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy.ext.asyncio import async_sessionmaker

from . import config
from .admission import Admission
from .errors import DomainError
from .gateway import MockGateway, PaymentGateway, PaystackGateway
from .helpers import is_valid_email, to_iso
from .infra.sql import Gated, make_async_engine
from .infra.timings import flush_to_log
from .model.coordination import CoordinationStore
from .model.db import create_schema
from .redemption import Redemption
from .settlement import Settlement

logger = logging.getLogger(__name__)


@dataclass
class Services:
    admission: Admission
    settlement: Settlement
    redemption: Redemption


def make_services(*, sessions: async_sessionmaker, gated: Gated,
                  r: redis.Redis, gateway: PaymentGateway) -> Services:
    store = CoordinationStore(r)
    redemption = Redemption(
        sessions=sessions, gated=gated, store=store,
        verify_base_url=config.FRONTEND_URL,
        grace_seconds=config.REDEMPTION_GRACE_SECONDS,
    )
    return Services(
        admission=Admission(sessions=sessions, gated=gated, store=store),
        settlement=Settlement(
            sessions=sessions, gated=gated, store=store, gateway=gateway,
            redemption=redemption,
            callback_url=config.CALLBACK_URL,
            amount_tolerance=config.AMOUNT_TOLERANCE,
            dedup_ttl=config.WEBHOOK_DEDUP_TTL,
        ),
        redemption=redemption,
    )


def make_redis() -> redis.Redis:
    return redis.from_url(
        config.REDIS_URL,
        decode_responses=True,
        max_connections=config.REDIS_MAX_CONN,
        socket_timeout=2.0,
        socket_connect_timeout=2.0,
        retry_on_timeout=True,
    )


def make_gateway(http: httpx.AsyncClient) -> PaymentGateway:
    if config.GATEWAY_BACKEND == "mock":
        return MockGateway(secret=config.MOCK_SECRET)
    if not config.PAYSTACK_SECRET_KEY:
        raise RuntimeError("PAYSTACK_SECRET_KEY is required "
                           "(or set GATEWAY_BACKEND=mock)")
    return PaystackGateway(
        http, config.PAYSTACK_SECRET_KEY,
        base_url=config.PAYSTACK_BASE_URL,
        timeout=config.GATEWAY_TIMEOUT,
    )


app = FastAPI(
    title="Eventful",
    default_response_class=ORJSONResponse,
)


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _startup():
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if config.DATABASE_URL is None:
        raise RuntimeError("NEED DATABASE_URL!")

    engine, sessions, gated = make_async_engine(
        config.DATABASE_URL,
        pool_size=config.DB_POOL_SIZE,
        max_overflow=config.DB_MAX_OVERFLOW,
        pool_timeout=config.DB_POOL_TIMEOUT,
        gate_limit=config.DB_GATE_LIMIT,
    )
    async with engine.begin() as conn:
        await create_schema(conn)

    app.state.engine = engine
    app.state.sessions = sessions
    app.state.http = httpx.AsyncClient(
        timeout=config.GATEWAY_TIMEOUT,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    app.state.redis = make_redis()
    app.state.gateway = make_gateway(app.state.http)
    app.state.services = make_services(
        sessions=sessions, gated=gated,
        r=app.state.redis, gateway=app.state.gateway,
    )
    logger.info("Eventful is starting up (gateway: %s)",
                config.GATEWAY_BACKEND)


@app.on_event("shutdown")
async def _shutdown():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.dispose()
        app.state.engine = None
    flush_to_log()


def services(request: Request) -> Services:
    return request.app.state.services


def current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # identity is established upstream; we only need the id
    if not x_user_id:
        raise HTTPException(401, detail="missing x-user-id")
    return x_user_id


@app.exception_handler(DomainError)
async def _domain_error(request: Request, exc: DomainError):
    return ORJSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error": exc.code.value,
            "message": exc.message,
        },
    )


@app.get("/api/health")
async def health():
    return {"status": "ok"}


# ----------------------------
# Tickets
# ----------------------------
@app.post("/api/tickets", status_code=201)
async def purchase_ticket(
    payload: dict,
    user_id: str = Depends(current_user),
    svc: Services = Depends(services),
):
    event_id = payload.get("event_id")
    if not event_id:
        raise HTTPException(400, detail="event_id is required")
    ticket = await svc.admission.purchase(user_id, str(event_id))
    return {"success": True, "data": {
        "id": ticket.id,
        "event_id": ticket.event_id,
        "status": ticket.status,
        "created_at": to_iso(ticket.created_at),
    }}


@app.post("/api/tickets/{ticket_id}/cancel")
async def cancel_ticket(
    ticket_id: str,
    user_id: str = Depends(current_user),
    svc: Services = Depends(services),
):
    await svc.admission.cancel(ticket_id, user_id)
    return {"success": True, "message": "Ticket cancelled successfully"}


@app.post("/api/tickets/{ticket_id}/artifact")
async def issue_artifact(
    ticket_id: str,
    user_id: str = Depends(current_user),
    svc: Services = Depends(services),
):
    artifact = await svc.redemption.issue_artifact(ticket_id,
                                                   owner_id=user_id)
    return {"success": True, "data": {"qr_code": artifact}}


@app.post("/api/tickets/verify/{token}")
async def verify_ticket(token: str, svc: Services = Depends(services)):
    result = await svc.redemption.redeem(token)
    return {"success": True, "data": {"valid": True, **result}}


# ----------------------------
# Payments
# ----------------------------
@app.post("/api/payments/initialize", status_code=201)
async def initialize_payment(
    payload: dict,
    user_id: str = Depends(current_user),
    svc: Services = Depends(services),
):
    ticket_id = payload.get("ticket_id")
    email = (payload.get("email") or "").strip()
    amount = payload.get("amount")
    if not ticket_id or not isinstance(amount, int):
        raise HTTPException(400, detail="ticket_id and integer amount "
                                        "are required")
    if not is_valid_email(email):
        raise HTTPException(400, detail="email must be a valid address")
    result = await svc.settlement.initialize(
        str(ticket_id), user_id, email, amount
    )
    return {"success": True, "data": result}


@app.get("/api/payments/verify/{reference}")
async def verify_payment(reference: str, svc: Services = Depends(services)):
    return {"success": True, "data": await svc.settlement.verify(reference)}


@app.post("/api/payments/webhook")
async def payments_webhook(
    request: Request,
    svc: Services = Depends(services),
):
    raw = await request.body()
    signature = request.headers.get("x-paystack-signature")
    result = await svc.settlement.reconcile(raw, signature)
    # the gateway only needs an acknowledgement
    return {"success": True, "data": result}


# ----------------------------
# MockPay (GATEWAY_BACKEND=mock only)
# ----------------------------
@app.post("/mockpay/{reference}/emit")
async def mockpay_emit(
    reference: str,
    payload: dict,
    request: Request,
    svc: Services = Depends(services),
):
    gateway = request.app.state.gateway
    if not isinstance(gateway, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    kind = payload.get("event", "charge.success")
    status = payload.get("status", "success")
    body, sig = gateway.signed_event(reference, kind=kind, status=status)
    result = await svc.settlement.reconcile(body, sig)
    return {"success": True, "data": result}
