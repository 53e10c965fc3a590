import inspect
import json
from urllib.parse import parse_qs

import fakeredis
import httpx
import pytest
import pytest_asyncio

from questgate.gameapi import GameApiClient
from questgate.infra import timings
from questgate.infra.sql import make_async_engine
from questgate.model.providerorder import _redis as redis_orders
from questgate.model.providerorder._sql import (
    ProviderOrderStore, create_schema as create_order_schema,
)
from questgate.model.reservation import _redis as redis_reservations
from questgate.model.reservation._sql import (
    ReservationStore, create_schema as create_reservation_schema,
)
from questgate.payments import PaymentLifecycle
from questgate.session import SessionContext

API_BASE = "http://game.test/api"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class FakeUpstream:
    """Routes (method, php file, action) to canned replies or callables."""

    def __init__(self) -> None:
        self.routes = {}
        self.calls = []

    def on(self, method, path, action=None, *, json=None, status=200,
           handler=None):
        if handler is None:
            body = json

            def handler(request):
                return httpx.Response(status, json=body)
        self.routes[(method, path, action)] = handler

    def calls_to(self, path, action=None):
        return [c for c in self.calls
                if c["path"] == path and (action is None
                                          or c["action"] == action)]

    @staticmethod
    def _body(request: httpx.Request):
        ctype = request.headers.get("content-type", "")
        if "json" in ctype:
            return json.loads(request.content or b"{}")
        if "form" in ctype:
            return {k: v[0] for k, v in
                    parse_qs(request.content.decode()).items()}
        return {}

    async def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path.rsplit("/", 1)[-1]
        body = self._body(request)
        action = request.url.params.get("action") or body.get("action")
        self.calls.append({
            "method": request.method, "path": path, "action": action,
            "body": body, "request": request,
        })
        route = (self.routes.get((request.method, path, action))
                 or self.routes.get((request.method, path, None)))
        if route is None:
            return httpx.Response(
                404, json={"success": False, "message": "no route"}
            )
        response = route(request)
        if inspect.isawaitable(response):
            response = await response
        return response


@pytest.fixture(autouse=True)
def reset_timings():
    timings.reset()
    yield


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def session():
    return SessionContext(token="tok-1", username="hero",
                          csrf_token="csrf-1", fingerprint="fp-1")


@pytest_asyncio.fixture
async def api(upstream):
    transport = httpx.MockTransport(upstream.handler)
    async with httpx.AsyncClient(transport=transport) as http:
        yield GameApiClient(http, API_BASE)


@pytest_asyncio.fixture
async def sql(tmp_path):
    engine, SessionAsync, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'questgate-test.db'}"
    )
    async with engine.begin() as conn:
        await create_reservation_schema(conn)
        await create_order_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest_asyncio.fixture
async def fake_redis():
    # Lua scripts need the fakeredis[lua] extra
    r = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(),
                                 decode_responses=True)
    yield r
    await r.aclose()


@pytest.fixture(params=["sql", "redis"])
def backend(request):
    return request.param


@pytest.fixture
def reservations(backend, sql, fake_redis):
    if backend == "redis":
        return redis_reservations.ReservationStore(fake_redis)
    SessionAsync, gated = sql
    return ReservationStore(sessionmaker=SessionAsync, gated=gated)


@pytest.fixture
def orders(backend, sql, fake_redis):
    if backend == "redis":
        return redis_orders.ProviderOrderStore(fake_redis, ttl_seconds=3600)
    SessionAsync, gated = sql
    return ProviderOrderStore(sessionmaker=SessionAsync, gated=gated,
                              ttl_seconds=3600)


@pytest.fixture
def lifecycle(orders, reservations, api):
    return PaymentLifecycle(orders, reservations, api)
