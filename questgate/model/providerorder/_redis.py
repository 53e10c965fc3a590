from __future__ import annotations
import time
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis


# ---- keys
def k_po(order_id: str) -> str: return f"po:{order_id}"
def k_fulfill(order_id: str) -> str: return f"fulfill:{order_id}"
def k_idemp(evt: str) -> str: return f"idemp:{evt}"


PENDING_INDEX = "po_pending"

# ARGV[1] new status, ARGV[2] resolved_at, ARGV[3..] allowed current statuses
LUA_SET_STATUS = """
local cur = redis.call('HGET', KEYS[1], 'status')
if not cur then return 0 end
for i = 3, #ARGV do
  if cur == ARGV[i] then
    redis.call('HSET', KEYS[1], 'status', ARGV[1], 'resolved_at', ARGV[2])
    redis.call('ZREM', KEYS[2], KEYS[3])
    return 1
  end
end
return 0
"""


class ProviderOrderStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self._set_status = r.register_script(LUA_SET_STATUS)

    async def save(self, order_id: str, mapping: Dict[str, Any]) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        # decode_responses=True: store strings, skip None
        h = {
            "flow": mapping["flow"],
            "status": "pending",
            "created_at": str(created_at),
        }
        if mapping.get("reservation_id"):
            h["reservation_id"] = mapping["reservation_id"]
        if mapping.get("bundle_id") is not None:
            h["bundle_id"] = str(mapping["bundle_id"])
        if mapping.get("owner"):
            h["owner"] = mapping["owner"]
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_po(order_id), mapping=h)
        # keep resolved orders around long enough for a late capture
        pipe.expire(k_po(order_id), self.ttl * 24)
        pipe.zadd(PENDING_INDEX, {order_id: created_at})
        await pipe.execute()

    async def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        h = await self.r.hgetall(k_po(order_id))
        if not h:
            return None
        return {
            "order_id": order_id,
            "flow": h.get("flow", ""),
            "status": h.get("status", "pending"),
            "reservation_id": h.get("reservation_id"),
            "bundle_id": (
                int(h["bundle_id"]) if h.get("bundle_id") else None
            ),
            "created_at": float(h.get("created_at", "0")),
            "owner": h.get("owner"),
        }

    async def set_status(self, order_id: str, status: str,
                         only_from: Tuple[str, ...] = ("pending",)) -> bool:
        res = await self._set_status(
            keys=[k_po(order_id), PENDING_INDEX, order_id],
            args=[status, str(time.time()), *only_from],
        )
        return int(res) == 1

    async def fulfill_gate(self, order_id: str) -> bool:
        # NX gate for fulfillment, 24h TTL
        ok = await self.r.set(k_fulfill(order_id), "1", nx=True, ex=24*3600)
        return bool(ok)

    async def mark_event_seen(self, evt_id: Optional[str]) -> bool:
        if not evt_id:
            return True
        ok = await self.r.set(k_idemp(evt_id), "1", nx=True, ex=24*3600)
        return bool(ok)

    async def fulfill_and_mark_event(
        self, order_id: str, idem: Optional[str]
    ) -> Dict[str, Optional[bool]]:
        if not await self.fulfill_gate(order_id):
            return {"already_fulfilled": True, "event_seen": None}
        if idem:
            fresh = await self.mark_event_seen(idem)
            return {"already_fulfilled": False, "event_seen": not fresh}
        return {"already_fulfilled": False, "event_seen": None}

    async def get_recent(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total = await self.r.zcard(PENDING_INDEX)
        order_ids = await self.r.zrevrange(
            PENDING_INDEX, 0, max(0, limit - 1)
        )
        pipe = self.r.pipeline()
        for oid in order_ids:
            pipe.hgetall(k_po(oid))
        rows = await pipe.execute()

        now = time.time()
        items = []
        for oid, h in zip(order_ids, rows):
            # house-keeping: index entry whose hash expired
            if not h:
                await self.r.zrem(PENDING_INDEX, oid)
                continue
            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "order_id": oid,
                "flow": h.get("flow", ""),
                "reservation_id": h.get("reservation_id"),
                "bundle_id": (
                    int(h["bundle_id"]) if h.get("bundle_id") else None
                ),
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "status": "PENDING",
            })
        return int(total), items
