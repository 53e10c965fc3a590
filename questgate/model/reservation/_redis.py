# model/reservation/_redis.py
from __future__ import annotations
import uuid
from typing import Optional

import redis.asyncio as redis

from ...errors import ReservationConflict, ValidationError
from ...helpers import now_ts
from ...infra.timings import timeit
from ...logs import get_logger
from ..stock import BundleStock, Reservation, R_RELEASED, R_SOLD

log = get_logger(__name__)


# ---- keys
def k_stock(bundle_id: int) -> str: return f"stock:{bundle_id}"
def k_resv(rid: str) -> str: return f"resv:{rid}"


# Returns 1 on success, 0 when sold out, -1 for an unknown bundle.
LUA_RESERVE = """
local total = redis.call('HGET', KEYS[1], 'total')
if not total then return -1 end
local reserved = tonumber(redis.call('HGET', KEYS[1], 'reserved') or '0')
local sold = tonumber(redis.call('HGET', KEYS[1], 'sold') or '0')
if reserved + sold >= tonumber(total) then return 0 end
redis.call('HINCRBY', KEYS[1], 'reserved', 1)
redis.call('HSET', KEYS[2], 'bundle_id', ARGV[1], 'status', 'pending',
           'created_at', ARGV[2], 'stock_key', KEYS[1])
return 1
"""

# KEYS[1] reservation, KEYS[2] its stock hash; pending -> ARGV[1]
# 1 if changed, 0 otherwise, -1 when KEYS[2] is not the reservation's stock
LUA_RESOLVE = """
local status = redis.call('HGET', KEYS[1], 'status')
if status ~= 'pending' then return 0 end
if redis.call('HGET', KEYS[1], 'stock_key') ~= KEYS[2] then return -1 end
redis.call('HSET', KEYS[1], 'status', ARGV[1])
redis.call('HINCRBY', KEYS[2], 'reserved', -1)
if ARGV[1] == 'sold' then
  redis.call('HINCRBY', KEYS[2], 'sold', 1)
end
return 1
"""


class ReservationStore:
    def __init__(self, r: redis.Redis) -> None:
        self.r = r
        self._reserve = r.register_script(LUA_RESERVE)
        self._resolve = r.register_script(LUA_RESOLVE)

    async def ensure_stock(self, bundle_id: int, total_quantity: int) -> None:
        key = k_stock(bundle_id)
        # HSETNX per field keeps counters of an existing bundle untouched
        pipe = self.r.pipeline(transaction=True)
        pipe.hsetnx(key, "total", int(total_quantity))
        pipe.hsetnx(key, "reserved", 0)
        pipe.hsetnx(key, "sold", 0)
        await pipe.execute()

    async def get_stock(self, bundle_id: int) -> Optional[BundleStock]:
        h = await self.r.hgetall(k_stock(bundle_id))
        if not h:
            return None
        return BundleStock(
            bundle_id=int(bundle_id),
            total_quantity=int(h.get("total", 0)),
            reserved_count=int(h.get("reserved", 0)),
            sold_count=int(h.get("sold", 0)),
        )

    async def get_reservation(
            self, reservation_id: str) -> Optional[Reservation]:
        h = await self.r.hgetall(k_resv(reservation_id))
        if not h:
            return None
        return Reservation(
            reservation_id=reservation_id,
            bundle_id=int(h["bundle_id"]),
            status=h["status"],
            created_at=float(h.get("created_at", 0)),
        )

    async def reserve(self, bundle_id: int) -> str:
        reservation_id = f"resv_{uuid.uuid4().hex}"
        async with timeit("reservation.reserve"):
            res = await self._reserve(
                keys=[k_stock(bundle_id), k_resv(reservation_id)],
                args=[int(bundle_id), now_ts()],
            )
        if int(res) == -1:
            raise ValidationError(f"unknown bundle {bundle_id}")
        if int(res) == 0:
            raise ReservationConflict("Bundle sold out", bundle_id=bundle_id)
        log.info("reservation_created", bundle_id=bundle_id,
                 reservation_id=reservation_id)
        return reservation_id

    async def _resolve_to(self, reservation_id: str, status: str) -> bool:
        # the stock key is fixed at reserve time and never rewritten
        stock_key = await self.r.hget(k_resv(reservation_id), "stock_key")
        if stock_key is None:
            return False
        res = int(await self._resolve(
            keys=[k_resv(reservation_id), stock_key], args=[status]
        ))
        if res == -1:
            log.error("reservation_stock_key_mismatch",
                      reservation_id=reservation_id, stock_key=stock_key)
        return res == 1

    async def release(self, reservation_id: str) -> bool:
        async with timeit("reservation.release"):
            changed = await self._resolve_to(reservation_id, R_RELEASED)
        if changed:
            log.info("reservation_released", reservation_id=reservation_id)
        return changed

    async def finalize(self, reservation_id: str) -> bool:
        async with timeit("reservation.finalize"):
            changed = await self._resolve_to(reservation_id, R_SOLD)
        if changed:
            log.info("reservation_sold", reservation_id=reservation_id)
        return changed
