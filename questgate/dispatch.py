"""
Order dispatch: one entry point for the four purchase flows.

Every branch ends with a provider order id. The card checkout gets it back
directly (`orderID`); the others get an approval URL and the id is its
`token` query parameter. Bundles hold a unit of stock before the provider is
asked for anything, and give it back on every failure path.
"""
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional

from .errors import IntegrationDefect, ReservationConflict, TransportError
from .errors import ValidationError
from .gameapi import GameApiClient
from .helpers import as_int
from .infra.timings import timeit
from .logs import get_logger
from .model.payload import (
    BundleOrder, GamePassExtend, GamePassPurchase, OrderPayload, Tier,
    WebshopOrder, validate_payload,
)
from .payments import PaymentLifecycle, extract_order_id
from .session import SessionContext

log = get_logger(__name__)


def _tier_value(tier) -> str:
    return tier.value if isinstance(tier, Tier) else str(tier)


def _is_sold_out(message: Optional[str]) -> bool:
    return bool(message) and "sold out" in message.lower()


async def sync_bundle_stock(api: GameApiClient,
                            reservations) -> List[Dict[str, Any]]:
    """Seed local counters for every limited bundle the server lists."""
    body = await api.list_bundles()
    bundles = [b for b in body.get("bundles") or [] if isinstance(b, dict)]
    for b in bundles:
        # stock NULL means unlimited
        if b.get("stock") is not None:
            await reservations.ensure_stock(
                as_int(b.get("id")), max(0, as_int(b.get("stock")))
            )
    return bundles


class OrderRouter:
    def __init__(self, api: GameApiClient, reservations,
                 lifecycle: PaymentLifecycle) -> None:
        self.api = api
        self.reservations = reservations
        self.lifecycle = lifecycle

    async def create_order(self, session: SessionContext,
                           payload: OrderPayload) -> str:
        validate_payload(payload)
        async with timeit(f"dispatch.{payload.flow}"):
            if isinstance(payload, WebshopOrder):
                order_id = await self._webshop(session, payload)
            elif isinstance(payload, BundleOrder):
                order_id = await self._bundle(session, payload)
            elif isinstance(payload, GamePassPurchase):
                order_id = await self._gamepass(session, payload)
            elif isinstance(payload, GamePassExtend):
                order_id = await self._gamepass_extend(session, payload)
            else:
                raise ValidationError(
                    f"unsupported order payload: {type(payload).__name__}"
                )
        return order_id

    # ---- reply checking -------------------------------------------------
    def _defect(self, flow: str, exc: IntegrationDefect) -> IntegrationDefect:
        log.error("integration_defect", flow=flow, reason=exc.message,
                  **exc.detail)
        return exc

    def _field(self, flow: str, body: Dict[str, Any], key: str) -> str:
        if not body.get("success"):
            message = str(
                body.get("message") or body.get("error") or "order rejected"
            )
            if _is_sold_out(message):
                raise ReservationConflict(message)
            raise TransportError(f"{flow}: {message}", status_code=200,
                                 upstream_message=message)
        value = body.get(key)
        if not value or not str(value).strip():
            raise self._defect(flow, IntegrationDefect(
                f"{flow}: success reply without {key!r}"
            ))
        return str(value).strip()

    def _order_id_from_url(self, flow: str, body: Dict[str, Any]) -> str:
        url = self._field(flow, body, "url")
        try:
            return extract_order_id(url)
        except IntegrationDefect as e:
            raise self._defect(flow, e)

    # ---- flows ----------------------------------------------------------
    async def _webshop(self, session: SessionContext,
                       payload: WebshopOrder) -> str:
        body = await self.api.create_webshop_order(
            session, payload.request_body()
        )
        order_id = self._field(payload.flow, body, "orderID")
        await self.lifecycle.begin(order_id, payload.flow,
                                   owner=session.owner)
        return order_id

    async def _bundle(self, session: SessionContext,
                      payload: BundleOrder) -> str:
        stock = await self.reservations.get_stock(payload.bundle_id)
        if stock is None:
            bundles = await sync_bundle_stock(self.api, self.reservations)
            if not any(as_int(b.get("id")) == payload.bundle_id
                       for b in bundles):
                raise ValidationError("Bundle not found or expired")
            stock = await self.reservations.get_stock(payload.bundle_id)

        reservation_id = None
        if stock is not None:
            reservation_id = await self.reservations.reserve(
                payload.bundle_id
            )

        try:
            try:
                body = await self.api.purchase_bundle(
                    session, payload.bundle_id, payload.character_id,
                    payload.character_name,
                )
            except TransportError as e:
                if _is_sold_out(e.detail.get("upstream_message")):
                    raise ReservationConflict(
                        "Bundle sold out", bundle_id=payload.bundle_id
                    ) from e
                raise
            order_id = self._order_id_from_url(payload.flow, body)
            await self.lifecycle.begin(
                order_id, payload.flow, reservation_id=reservation_id,
                bundle_id=payload.bundle_id, owner=session.owner,
            )
        except BaseException:
            # includes task cancellation
            if reservation_id is not None:
                await asyncio.shield(
                    self.reservations.release(reservation_id)
                )
            raise
        return order_id

    async def _gamepass(self, session: SessionContext,
                        payload: GamePassPurchase) -> str:
        body = await self.api.purchase_gamepass(
            session, _tier_value(payload.tier), payload.upgrade
        )
        order_id = self._order_id_from_url(payload.flow, body)
        await self.lifecycle.begin(order_id, payload.flow,
                                   owner=session.owner)
        return order_id

    async def _gamepass_extend(self, session: SessionContext,
                               payload: GamePassExtend) -> str:
        body = await self.api.extend_gamepass(
            session, _tier_value(payload.tier), payload.days
        )
        order_id = self._order_id_from_url(payload.flow, body)
        await self.lifecycle.begin(order_id, payload.flow,
                                   owner=session.owner)
        return order_id
