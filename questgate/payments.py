"""
Payment token lifecycle.

A provider order is born when the remote API hands back a redirect URL (or a
bare order id for the card checkout) and dies when the provider reports
capture or cancellation, via the signed webhook or the browser coming back to
the failure page. Until then it is recorded as in flight so the bundle
reservation behind it can be finalized or released exactly once.
"""
from __future__ import annotations
import asyncio
import base64
import hashlib
import hmac
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Set, Tuple

import httpx

from .errors import IntegrationDefect, QuestgateError, ReservationConflict
from .errors import UnknownOrder, ValidationError
from .helpers import now_ts
from .infra.timings import timeit
from .logs import get_logger
from .model.stock import R_SOLD

log = get_logger(__name__)

SIGNATURE_HEADER = "x-questgate-signature"


def extract_order_id(redirect_url: Optional[str], key: str = "token") -> str:
    """Pull the provider order id out of an approval URL.

    https://pay.example/checkout?token=ABC123 -> "ABC123"
    """
    if not redirect_url:
        raise IntegrationDefect("redirect url missing from order response")
    try:
        token = httpx.URL(redirect_url).params.get(key)
    except (httpx.InvalidURL, TypeError) as e:
        raise IntegrationDefect(
            f"unparseable redirect url: {redirect_url!r}"
        ) from e
    if not token:
        raise IntegrationDefect(
            f"redirect url carries no {key!r} parameter",
            redirect_url=redirect_url,
        )
    return token


@dataclass
class ProviderOrder:
    order_id: str
    flow: str
    created_at: float
    reservation_id: Optional[str] = None
    bundle_id: Optional[int] = None
    status: str = "pending"
    owner: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ProviderOrder":
        return cls(
            order_id=row["order_id"],
            flow=row["flow"],
            created_at=float(row.get("created_at") or 0.0),
            reservation_id=row.get("reservation_id") or None,
            bundle_id=(
                int(row["bundle_id"])
                if row.get("bundle_id") is not None else None
            ),
            status=row.get("status") or "pending",
            owner=row.get("owner") or None,
        )

    def to_mapping(self) -> Dict[str, Any]:
        return {
            "flow": self.flow,
            "created_at": self.created_at,
            "reservation_id": self.reservation_id,
            "bundle_id": self.bundle_id,
            "owner": self.owner,
        }


# ----------------------------
# Webhook adapter
# ----------------------------
class PaymentAdapter(ABC):
    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (order_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...


class SignedWebhook(PaymentAdapter):
    """HMAC-SHA256 over the raw body, base64 in the signature header."""

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(SIGNATURE_HEADER)
        if not sig or not hmac.compare_digest(self.sign(payload), sig):
            raise ValidationError("Invalid signature")
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise ValidationError("Invalid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Invalid event")
        return event

    def event_kind(self, event: dict) -> str:
        return event.get("type", "").split(".")[-1]

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
            event.get("order_id", ""),
            event.get("idempotency_key"),
        )


# ----------------------------
# Lifecycle
# ----------------------------
class PaymentLifecycle:
    def __init__(self, orders, reservations, api) -> None:
        self.orders = orders
        self.reservations = reservations
        self.api = api
        self._background: Set[asyncio.Task] = set()

    async def begin(self, order_id: str, flow: str,
                    reservation_id: Optional[str] = None,
                    bundle_id: Optional[int] = None,
                    owner: Optional[str] = None) -> ProviderOrder:
        order = ProviderOrder(
            order_id=order_id, flow=flow, created_at=now_ts(),
            reservation_id=reservation_id, bundle_id=bundle_id, owner=owner,
        )
        async with timeit("providerorder.save"):
            await self.orders.save(order_id, order.to_mapping())
        log.info("order_created", order_id=order_id, flow=flow,
                 reservation_id=reservation_id)
        return order

    async def get(self, order_id: str) -> Optional[ProviderOrder]:
        row = await self.orders.get(order_id)
        return ProviderOrder.from_row(row) if row else None

    async def pending(self, limit: int = 100):
        return await self.orders.get_recent(limit=limit)

    async def on_order_captured(
            self, order_id: str, idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        order = await self.get(order_id)
        if order is None:
            log.warning("capture_for_unknown_order", order_id=order_id)
            return {"ok": True, "order_status": "UNKNOWN"}

        # Combined guard: one tx on SQL, 1-2 RTT on Redis
        async with timeit("providerorder.fulfill"):
            flags = await self.orders.fulfill_and_mark_event(
                order_id, idempotency_key
            )
        if flags["already_fulfilled"] or flags["event_seen"] is True:
            return {"ok": True, "idempotent": True}

        fulfilled = True
        if order.reservation_id:
            fulfilled = await self.reservations.finalize(order.reservation_id)
            if not fulfilled:
                fulfilled = await self._late_capture(order)

        await self.orders.set_status(
            order_id, "captured", only_from=("pending", "cancelled")
        )
        status = "PAID" if fulfilled else "PAID_UNFULFILLED"
        log.info("order_captured", order_id=order_id, flow=order.flow,
                 order_status=status)
        return {"ok": True, "order_status": status}

    async def _late_capture(self, order: ProviderOrder) -> bool:
        resv = await self.reservations.get_reservation(order.reservation_id)
        if resv is not None and resv.status == R_SOLD:
            return True
        if order.bundle_id is None:
            return False
        # the hold was released (cancel raced the capture): book what is left
        async with timeit("reservation.book_immediately"):
            try:
                rid = await self.reservations.reserve(order.bundle_id)
            except ReservationConflict:
                log.error("late_capture_stock_gone", order_id=order.order_id,
                          bundle_id=order.bundle_id)
                return False
            return await self.reservations.finalize(rid)

    async def on_order_cancelled(self, order_id: str) -> bool:
        """Release whatever the order holds. Safe to call repeatedly."""
        order = await self.get(order_id)
        changed = False
        if order is not None:
            changed = await self.orders.set_status(order_id, "cancelled")
            if order.reservation_id:
                # no-op when already released or sold
                await self.reservations.release(order.reservation_id)
            log.info("order_cancelled", order_id=order_id, flow=order.flow,
                     changed=changed)

        if order is None or (changed and order.flow == "bundle"):
            self._spawn(self._notify_remote_cancel(order_id))
        return changed

    async def cancel_owned(self, order_id: str, owner: str) -> bool:
        """Cancel on behalf of a session; other sessions' orders are
        reported as unknown."""
        order = await self.get(order_id)
        if order is not None and order.owner != owner:
            log.warning("cancel_by_non_owner", order_id=order_id)
            raise UnknownOrder("order not found", order_id=order_id)
        return await self.on_order_cancelled(order_id)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_remote_cancel(self, order_id: str) -> None:
        try:
            await self.api.cancel_bundle_order(order_id)
        except QuestgateError as e:
            log.warning("bundle_cancel_notify_failed", order_id=order_id,
                        error=e.message)

    async def drain(self) -> None:
        """Wait for outstanding remote cancel notifications."""
        if self._background:
            await asyncio.gather(*list(self._background))
