from __future__ import annotations
import os
from typing import Any, Dict, Optional

import httpx
import redis.asyncio as redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse

from .config import Settings, load_settings
from .dispatch import OrderRouter, sync_bundle_stock
from .errors import QuestgateError, RewardRejected, ValidationError
from .gameapi import GameApiClient
from .helpers import as_int, ct_equal
from .infra.sql import make_async_engine
from .infra.timings import aggregates
from .logs import configure_logging, get_logger
from .model import providerorder, reservation
from .model.payload import (
    BundleOrder, WebshopOrder, parse_payload,
)
from .payments import PaymentAdapter, PaymentLifecycle, SignedWebhook
from .rewards.achievements import AchievementEngine, progress_stats
from .rewards.cooldown import CooldownEngine, pending_rewards
from .rewards.spin import SpinWheel
from .session import Character, SessionRegistry, SessionState

log = get_logger(__name__)


def create_app(settings: Optional[Settings] = None,
               transport: Optional[httpx.AsyncBaseTransport] = None
               ) -> FastAPI:
    settings = settings or load_settings()

    app = FastAPI(
        title="questgate",
        default_response_class=ORJSONResponse,
    )
    app.state.settings = settings
    app.state.sessions = SessionRegistry(
        idle_seconds=settings.session_idle_seconds,
        max_sessions=settings.max_sessions,
    )
    app.state.adapter = SignedWebhook(settings.webhook_secret)

    engine, SessionAsync, gated = make_async_engine(settings.database_url)
    app.state.engine = engine

    needs_redis = "redis" in (reservation.BACKEND, providerorder.BACKEND)

    # ---
    # startup / shutdown
    # ---
    @app.on_event("startup")
    async def _say_hello():
        configure_logging(settings.log_level, settings.environment)
        log.info(
            "questgate_starting",
            reservation_backend=reservation.BACKEND,
            order_backend=providerorder.BACKEND,
            game_api=settings.game_api_base,
        )

    @app.on_event("startup")
    async def _db_init():
        async with engine.begin() as conn:
            if reservation.BACKEND != "redis":
                from .model.reservation._sql import create_schema
                await create_schema(conn)
            if providerorder.BACKEND != "redis":
                from .model.providerorder._sql import create_schema
                await create_schema(conn)

    @app.on_event("startup")
    async def _http_client_start():
        app.state.http = httpx.AsyncClient(
            timeout=settings.http_timeout,
            transport=transport,
            limits=httpx.Limits(
                max_connections=100, max_keepalive_connections=20
            ),
        )

    @app.on_event("startup")
    async def _redis_start():
        app.state.redis = None
        if needs_redis:
            app.state.redis = redis.from_url(
                settings.redis_url,
                decode_responses=True,
                max_connections=int(os.getenv("REDIS_MAX_CONN", "64")),
                socket_timeout=2.0,
                socket_connect_timeout=2.0,
                retry_on_timeout=True,
            )

    @app.on_event("startup")
    async def _core_start():
        api = GameApiClient(app.state.http, settings.game_api_base)
        reservations = reservation.new_store(
            sessionmaker=SessionAsync, gated=gated, r=app.state.redis
        )
        orders = providerorder.new_store(
            sessionmaker=SessionAsync, gated=gated, r=app.state.redis,
            ttl_seconds=settings.order_ttl_seconds,
        )
        app.state.api = api
        app.state.reservations = reservations
        app.state.lifecycle = PaymentLifecycle(orders, reservations, api)
        app.state.router = OrderRouter(api, reservations,
                                       app.state.lifecycle)
        app.state.achievements = AchievementEngine(api)
        app.state.spin = SpinWheel(api)

    @app.on_event("shutdown")
    async def _lifecycle_drain():
        lifecycle = getattr(app.state, "lifecycle", None)
        if lifecycle is not None:
            await lifecycle.drain()

    @app.on_event("shutdown")
    async def _http_client_stop():
        http = getattr(app.state, "http", None)
        if http is not None:
            await http.aclose()
            app.state.http = None

    @app.on_event("shutdown")
    async def _redis_stop():
        r = getattr(app.state, "redis", None)
        if r is not None:
            await r.aclose()
            app.state.redis = None

    @app.on_event("shutdown")
    async def _db_stop():
        await engine.dispose()

    # ----------------------------
    # Error taxonomy -> HTTP
    # ----------------------------
    @app.exception_handler(QuestgateError)
    async def _questgate_error(request: Request, exc: QuestgateError):
        if not isinstance(exc, RewardRejected):
            log.info("request_failed", path=request.url.path,
                     kind=exc.kind, message=exc.message)
        return ORJSONResponse(status_code=exc.http_status,
                              content=exc.to_dict())

    # ----------------------------
    # Dependencies
    # ----------------------------
    def current_session(request: Request,
                        sessionToken: Optional[str] = None) -> SessionState:
        auth = request.headers.get("authorization", "")
        token = ""
        if auth.lower().startswith("bearer "):
            token = auth[7:].strip()
        token = (
            token or request.headers.get("x-session-token", "").strip()
            or (sessionToken or "").strip()
        )
        if not token:
            raise HTTPException(status_code=401,
                                detail="session token required")
        return app.state.sessions.attach(
            token,
            username=request.headers.get("x-username", ""),
            csrf_token=request.headers.get("x-csrf-token"),
            fingerprint=request.headers.get("x-fingerprint", ""),
        )

    def require_admin(request: Request) -> None:
        expected = settings.admin_token
        given = request.headers.get("x-admin-token", "")
        if not expected or not ct_equal(given, expected):
            raise HTTPException(status_code=403, detail="admin only")

    def character_id_for(state: SessionState,
                         character_id: Optional[int]) -> int:
        if character_id:
            return character_id
        selected = state.context.selected_character
        if selected is None:
            raise ValidationError("select a character first")
        return selected.id

    async def json_body(request: Request) -> Dict[str, Any]:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("request body must be JSON")
        if not isinstance(data, dict):
            raise ValidationError("request body must be a JSON object")
        return data

    # ----------------------------
    # Orders
    # ----------------------------
    @app.post("/api/orders")
    async def create_order(
        request: Request,
        state: SessionState = Depends(current_session),
    ):
        data = await json_body(request)
        selected = state.context.selected_character
        if (selected is not None
                and data.get("type") in (WebshopOrder.flow, BundleOrder.flow)
                and not data.get("isGift", data.get("is_gift"))):
            if not data.get("characterId", data.get("character_id")):
                data["characterId"] = selected.id
                data["characterName"] = selected.name
        payload = parse_payload(data)
        order_id = await app.state.router.create_order(state.context, payload)
        return {"ok": True, "order_id": order_id, "flow": payload.flow}

    @app.post("/api/orders/{order_id}/cancel")
    async def cancel_order(
        order_id: str,
        state: SessionState = Depends(current_session),
    ):
        changed = await app.state.lifecycle.cancel_owned(
            order_id, state.context.owner
        )
        return {"ok": True, "order_id": order_id, "cancelled": changed}

    @app.get("/payment/failed")
    async def payment_failed(
        session_id: str = "",
        state: SessionState = Depends(current_session),
    ):
        # browser comes back from the provider without paying
        if not session_id:
            raise ValidationError("session_id is required")
        changed = await app.state.lifecycle.cancel_owned(
            session_id, state.context.owner
        )
        return {"ok": True, "order_id": session_id, "cancelled": changed}

    @app.get("/api/orders/pending", dependencies=[Depends(require_admin)])
    async def pending_orders(limit: int = 100):
        total, items = await app.state.lifecycle.pending(limit=limit)
        return {"items": items, "limit": limit, "total": total}

    # ----------------------------
    # Webhook endpoint
    # ----------------------------
    @app.post("/payments/webhook")
    async def payments_webhook(request: Request):
        adapter: PaymentAdapter = app.state.adapter
        payload = await request.body()
        headers = dict(request.headers)

        event = adapter.verify_webhook(payload, headers)
        kind = adapter.event_kind(event)  # succeeded | failed | canceled
        order_id, idem = adapter.event_ids(event)
        if not order_id:
            raise ValidationError("missing order_id")

        if kind == "succeeded":
            return await app.state.lifecycle.on_order_captured(
                order_id, idem
            )
        if kind in ("failed", "canceled"):
            await app.state.lifecycle.on_order_cancelled(order_id)
            return {
                "ok": True,
                "order_status": "FAILED" if kind == "failed" else "CANCELED",
            }
        raise ValidationError(f"unknown event type: {event.get('type')!r}")

    # ----------------------------
    # Bundles
    # ----------------------------
    @app.get("/api/bundles")
    async def list_bundles():
        reservations = app.state.reservations
        bundles = await sync_bundle_stock(app.state.api, reservations)
        for b in bundles:
            stock = await reservations.get_stock(as_int(b.get("id")))
            b["availability"] = stock.to_dict() if stock else None
        return {"bundles": bundles}

    @app.get("/api/bundles/{bundle_id}/stock")
    async def bundle_stock(bundle_id: int):
        stock = await app.state.reservations.get_stock(bundle_id)
        if stock is None:
            raise HTTPException(status_code=404, detail="unknown bundle")
        return stock.to_dict()

    # ----------------------------
    # Votes
    # ----------------------------
    @app.get("/api/votes")
    async def list_votes(state: SessionState = Depends(current_session)):
        engine = CooldownEngine(app.state.api, state.countdowns)
        sites = await engine.refresh(state.context)
        out = []
        for site in sites:
            elig = engine.get_eligibility(site)
            d = site.to_dict()
            d["can_vote"] = elig.can_vote_now
            d["remaining"] = elig.display()
            d["remaining_seconds"] = (
                int(elig.remaining.total_seconds())
                if elig.remaining is not None else None
            )
            out.append(d)
        summary = engine.summary
        return {
            "sites": out,
            "pending": pending_rewards(sites, state.countdowns),
            "coins": summary.coins,
            "vip_points": summary.vip_points,
            "total_votes": summary.total_votes,
            "streak": summary.streak.to_dict(),
        }

    @app.post("/api/votes/{site_id}")
    async def submit_vote(site_id: int,
                          state: SessionState = Depends(current_session)):
        engine = CooldownEngine(app.state.api, state.countdowns)
        result = await engine.submit_vote(state.context, site_id)
        return result.to_dict()

    # ----------------------------
    # Achievements
    # ----------------------------
    @app.get("/api/achievements")
    async def achievements_catalog():
        items = await app.state.achievements.catalog()
        return {"achievements": [a.to_dict() for a in items]}

    @app.get("/api/achievements/progress")
    async def achievements_progress(
        character_id: Optional[int] = None,
        state: SessionState = Depends(current_session),
    ):
        cid = character_id_for(state, character_id)
        items = await app.state.achievements.progress(state.context, cid)
        return {
            "achievements": [p.to_dict() for p in items],
            "stats": progress_stats(items),
        }

    @app.post("/api/achievements/check")
    async def achievements_check(
        character_id: Optional[int] = None,
        state: SessionState = Depends(current_session),
    ):
        cid = character_id_for(state, character_id)
        unlocked = await app.state.achievements.check_unlocks(
            state.context, cid
        )
        return {
            "newly_unlocked": [u.to_dict() for u in unlocked],
            "count": len(unlocked),
        }

    @app.post("/api/achievements/{achievement_id}/claim")
    async def achievements_claim(
        achievement_id: int,
        character_id: Optional[int] = None,
        state: SessionState = Depends(current_session),
    ):
        cid = character_id_for(state, character_id)
        reward = await app.state.achievements.claim(
            state.context, achievement_id, cid
        )
        return reward.to_dict()

    # ----------------------------
    # Chance wheel
    # ----------------------------
    @app.get("/api/spin/segments")
    async def spin_segments():
        return {"segments": await app.state.spin.segments()}

    @app.get("/api/spin/status")
    async def spin_status(state: SessionState = Depends(current_session)):
        status = await app.state.spin.status(state.context)
        return status.to_dict()

    @app.post("/api/spin")
    async def spin(request: Request,
                   state: SessionState = Depends(current_session)):
        data = await json_body(request)
        role_id = character_id_for(state, as_int(data.get("role_id")))
        result = await app.state.spin.spin(state.context, role_id)
        out = result.to_dict()
        # counts come from the server, never decremented here
        status = await app.state.spin.status(state.context)
        out["status"] = status.to_dict()
        return out

    # ----------------------------
    # Session
    # ----------------------------
    @app.post("/api/session/character")
    async def select_character(
        request: Request,
        state: SessionState = Depends(current_session),
    ):
        data = await json_body(request)
        cid = as_int(data.get("id", data.get("character_id")))
        name = str(data.get("name", data.get("character_name")) or "")
        if cid <= 0 or not name:
            raise ValidationError("character id and name are required")
        state.context.selected_character = Character(id=cid, name=name)
        return {"ok": True, "character": {"id": cid, "name": name}}

    @app.post("/api/session/logout")
    async def logout(state: SessionState = Depends(current_session)):
        app.state.sessions.end(state.context.token)
        return {"ok": True}

    @app.get("/api/timings")
    async def timings(reset: bool = False):
        return {"timings": aggregates(clear=reset)}

    return app


app = create_app()
