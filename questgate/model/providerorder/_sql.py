from __future__ import annotations
import time
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncSession, async_sessionmaker
)

from ...infra.sql import Gated


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_PROVIDER_ORDERS = r"""
-- in-flight provider orders, one row per redirect handed to the browser
CREATE TABLE IF NOT EXISTS provider_orders (
  order_id       TEXT PRIMARY KEY,
  flow           TEXT NOT NULL,
  status         TEXT NOT NULL DEFAULT 'pending',
  reservation_id TEXT,              -- bundle flow only
  bundle_id      INTEGER,           -- bundle flow only
  owner          TEXT,              -- hashed session token
  created_at     DOUBLE PRECISION NOT NULL,
  expires_at     DOUBLE PRECISION NOT NULL,
  resolved_at    DOUBLE PRECISION
);
"""

SQL_CREATE_IDEMPOTENCY_KEYS = r"""
CREATE TABLE IF NOT EXISTS idempotency_keys (
  key TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_FULFILLMENT_GATES = r"""
-- fulfillment gate: one row per order that has been captured
CREATE TABLE IF NOT EXISTS fulfillment_gates (
  order_id TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_PO_STATUS_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_po_status_created_at
  ON provider_orders (status, created_at);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_PROVIDER_ORDERS))
    await exec_(text(SQL_CREATE_IDEMPOTENCY_KEYS))
    await exec_(text(SQL_CREATE_FULFILLMENT_GATES))
    await exec_(text(SQL_CREATE_IDX_PO_STATUS_CREATED_AT))


class ProviderOrderStore:
    def __init__(self, *, sessionmaker: async_sessionmaker, gated: Gated,
                 ttl_seconds: int) -> None:
        self.sessionmaker = sessionmaker
        self.gated = gated
        self.ttl = ttl_seconds

    async def save(self, order_id: str, mapping: Dict[str, Any]) -> None:
        created_at = float(mapping.get("created_at") or time.time())
        async with self.gated():
            async with self.sessionmaker() as db:
                async with db.begin():
                    await db.execute(text("""
                      INSERT INTO provider_orders(
                        order_id, flow, status, reservation_id, bundle_id,
                        owner, created_at, expires_at
                      ) VALUES (
                        :order_id, :flow, 'pending', :reservation_id,
                        :bundle_id, :owner, :created_at, :expires_at
                      )
                      ON CONFLICT (order_id) DO UPDATE SET
                        flow=EXCLUDED.flow,
                        reservation_id=EXCLUDED.reservation_id,
                        bundle_id=EXCLUDED.bundle_id,
                        owner=EXCLUDED.owner,
                        created_at=EXCLUDED.created_at,
                        expires_at=EXCLUDED.expires_at
                    """), {
                        "order_id": order_id,
                        "flow": mapping["flow"],
                        "reservation_id": mapping.get("reservation_id"),
                        "bundle_id": mapping.get("bundle_id"),
                        "owner": mapping.get("owner"),
                        "created_at": created_at,
                        "expires_at": created_at + self.ttl,
                    })

    async def get(self, order_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.sessionmaker() as db:
                row = (await db.execute(text("""
                  SELECT order_id, flow, status, reservation_id, bundle_id,
                         owner, created_at
                  FROM provider_orders WHERE order_id=:order_id
                """), {"order_id": order_id})).mappings().first()
        return dict(row) if row else None

    async def set_status(self, order_id: str, status: str,
                         only_from: Tuple[str, ...] = ("pending",)) -> bool:
        """Conditional status move; False when the order is unknown or
        already somewhere else."""
        params: Dict[str, Any] = {
            "order_id": order_id, "status": status, "now": time.time(),
        }
        placeholders = []
        for i, s in enumerate(only_from):
            params[f"s{i}"] = s
            placeholders.append(f":s{i}")
        async with self.gated():
            async with self.sessionmaker() as db:
                async with db.begin():
                    row = (await db.execute(text(f"""
                      UPDATE provider_orders
                      SET status=:status, resolved_at=:now
                      WHERE order_id=:order_id
                        AND status IN ({", ".join(placeholders)})
                      RETURNING order_id
                    """), params)).first()
        return row is not None

    async def fulfill_and_mark_event(
            self, order_id: str, idem: Optional[str]
    ) -> Dict[str, Optional[bool]]:
        """
        1) Try the fulfill gate. If it already exists, short-circuit and
           leave the idempotency table alone.
        2) If the gate was set now and an idempotency key is given, mark it.

        Returns {"already_fulfilled": bool, "event_seen": bool | None}.
        """
        out: Dict[str, Optional[bool]] = {
            "already_fulfilled": False, "event_seen": False
        }
        now = time.time()
        async with self.gated():
            async with self.sessionmaker() as db:
                async with db.begin():
                    gate = (await db.execute(text("""
                      INSERT INTO fulfillment_gates(order_id, created_at)
                      VALUES(:order_id, :now)
                      ON CONFLICT (order_id) DO NOTHING
                      RETURNING order_id
                    """), {"order_id": order_id, "now": now})).first()

                    if gate is None:
                        out["already_fulfilled"] = True
                        out["event_seen"] = None
                        return out

                    if idem:
                        idem_row = (await db.execute(text("""
                          INSERT INTO idempotency_keys(key, created_at)
                          VALUES(:k, :now)
                          ON CONFLICT (key) DO NOTHING
                          RETURNING key
                        """), {"k": idem, "now": now})).first()
                        out["event_seen"] = idem_row is None
                    else:
                        out["event_seen"] = None
        return out

    async def get_recent(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.sessionmaker() as db:
                total = (await db.execute(text(
                    "SELECT COUNT(*) FROM provider_orders "
                    "WHERE status='pending'"
                ))).scalar_one()
                rows = (await db.execute(text("""
                    SELECT order_id, flow, reservation_id, bundle_id,
                           created_at
                    FROM provider_orders
                    WHERE status='pending'
                    ORDER BY created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

        now = time.time()
        items = []
        for r in rows:
            created = float(r["created_at"])
            items.append({
                "order_id": r["order_id"],
                "flow": r["flow"],
                "reservation_id": r["reservation_id"],
                "bundle_id": r["bundle_id"],
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "status": "PENDING",
            })
        return int(total), items
