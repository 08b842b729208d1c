"""Pytest fixtures: a throwaway SQLite file, fakeredis, and a Paystack stand-in
served through httpx.MockTransport."""
import json
import uuid
from decimal import Decimal

import httpx
import pytest
from fakeredis import aioredis as fake_aioredis

from eventful.gateway import PaystackGateway
from eventful.helpers import new_id, now_ts, sign_payload
from eventful.infra.sql import make_async_engine
from eventful.model.coordination import CoordinationStore
from eventful.model.db import Event, Ticket, create_schema, EVENT_PUBLISHED
from eventful.server import make_services

SECRET = "sk_test_secret"


class FakePaystack:
    """Answers /transaction/initialize and /transaction/verify like Paystack.
    `mode` switches between ok, error (HTTP 500), garbage (a JSON body that
    is not an object) and timeout."""

    def __init__(self):
        self.mode = "ok"
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.mode == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.mode == "error":
            return httpx.Response(
                500, json={"status": False, "message": "Gateway exploded"}
            )
        if self.mode == "garbage":
            return httpx.Response(200, json=["oops"])
        if request.url.path.endswith("/transaction/initialize"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "status": True,
                "message": "Authorization URL created",
                "data": {
                    "authorization_url": "https://checkout.paystack.com/test",
                    "access_code": "test_code",
                    "reference": body["reference"],
                },
            })
        if "/transaction/verify/" in request.url.path:
            ref = request.url.path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "status": True,
                "message": "Verification successful",
                "data": {"reference": ref, "status": "success"},
            })
        return httpx.Response(404, json={"status": False,
                                         "message": "not found"})


@pytest.fixture
async def db(tmp_path):
    engine, sessions, gated = make_async_engine(
        f"sqlite:///{tmp_path}/test.db", gate_limit=10,
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield sessions, gated
    await engine.dispose()


@pytest.fixture
async def redis_client():
    r = fake_aioredis.FakeRedis(decode_responses=True)
    await r.flushall()
    yield r
    await r.flushall()
    await r.aclose()


@pytest.fixture
def store(redis_client):
    return CoordinationStore(redis_client)


@pytest.fixture
def paystack():
    return FakePaystack()


@pytest.fixture
async def gateway(paystack):
    http = httpx.AsyncClient(transport=httpx.MockTransport(paystack))
    yield PaystackGateway(http, SECRET, base_url="https://api.paystack.test",
                          timeout=1.0)
    await http.aclose()


@pytest.fixture
def services(db, redis_client, gateway):
    sessions, gated = db
    return make_services(sessions=sessions, gated=gated, r=redis_client,
                         gateway=gateway)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
async def create_event(sessions, *, capacity=50, price=Decimal("10000.00"),
                       status=EVENT_PUBLISHED, starts_in=86400.0,
                       duration=7200.0, title="Payment Test Event"):
    now = now_ts()
    event = Event(
        id=new_id(),
        creator_id="creator-1",
        title=title,
        starts_at=now + starts_in,
        ends_at=now + starts_in + duration,
        capacity=capacity,
        price=price,
        currency="NGN",
        status=status,
        lock_version=0,
        created_at=now,
    )
    async with sessions() as s:
        async with s.begin():
            s.add(event)
    return event


async def load_ticket(sessions, ticket_id) -> Ticket:
    async with sessions() as s:
        return await s.get(Ticket, ticket_id)


def charge_event(reference, *, event_id=None, kind="charge.success",
                 status="success", payment_id=None, amount=1000000):
    event = {
        "id": event_id if event_id is not None else f"evt_{uuid.uuid4().hex}",
        "event": kind,
        "data": {
            "id": 4099260516,
            "status": status,
            "reference": reference,
            "amount": amount,
            "customer": {"email": "eventee@test.com"},
            "metadata": {"payment_id": payment_id} if payment_id else {},
        },
    }
    body = json.dumps(event).encode()
    return body, sign_payload(SECRET, body)
