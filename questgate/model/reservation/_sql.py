# model/reservation/_sql.py
"""
SQL reservation backend (PostgreSQL or SQLite).

- bundle_stock keeps one counter row per bundle
- bundle_reservations keeps one row per hold; status only moves
  pending -> sold or pending -> released

Atomicity comes from conditional UPDATEs: the row is only touched when the
invariant still holds after the change, so two concurrent reserves for the
last unit cannot both win.
"""
from __future__ import annotations
import uuid
from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncConnection, AsyncSession, async_sessionmaker
)

from ...errors import ReservationConflict, ValidationError
from ...helpers import now_ts
from ...infra.sql import Gated
from ...infra.timings import timeit
from ...logs import get_logger
from ..stock import (
    BundleStock, Reservation, R_PENDING, R_RELEASED, R_SOLD
)

log = get_logger(__name__)


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_BUNDLE_STOCK = r"""
CREATE TABLE IF NOT EXISTS bundle_stock (
    bundle_id       INTEGER PRIMARY KEY,
    total_quantity  INTEGER NOT NULL CHECK (total_quantity >= 0),
    reserved_count  INTEGER NOT NULL DEFAULT 0 CHECK (reserved_count >= 0),
    sold_count      INTEGER NOT NULL DEFAULT 0 CHECK (sold_count >= 0),
    CHECK (reserved_count + sold_count <= total_quantity)
);
"""

SQL_CREATE_RESERVATIONS = r"""
CREATE TABLE IF NOT EXISTS bundle_reservations (
    id          TEXT PRIMARY KEY,
    bundle_id   INTEGER NOT NULL REFERENCES bundle_stock(bundle_id),
    status      TEXT NOT NULL CHECK (status IN ('pending','sold','released')),
    created_at  DOUBLE PRECISION NOT NULL,
    updated_at  DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_RESERVATIONS_IDX = r"""
CREATE INDEX IF NOT EXISTS bundle_reservations_bundle_status_idx
    ON bundle_reservations(bundle_id, status);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection) -> None:
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_BUNDLE_STOCK))
    await exec_(text(SQL_CREATE_RESERVATIONS))
    await exec_(text(SQL_CREATE_RESERVATIONS_IDX))


class ReservationStore:
    def __init__(self, *, sessionmaker: async_sessionmaker,
                 gated: Gated) -> None:
        self.sessionmaker = sessionmaker
        self.gated = gated

    async def ensure_stock(self, bundle_id: int, total_quantity: int) -> None:
        """Seed the counter row for a bundle; an existing row is left alone."""
        async with self.gated():
            async with self.sessionmaker() as db:
                async with db.begin():
                    await db.execute(text("""
                        INSERT INTO bundle_stock(
                            bundle_id, total_quantity, reserved_count,
                            sold_count)
                        VALUES (:b, :t, 0, 0)
                        ON CONFLICT (bundle_id) DO NOTHING
                    """), {"b": int(bundle_id), "t": int(total_quantity)})

    async def get_stock(self, bundle_id: int) -> Optional[BundleStock]:
        async with self.gated():
            async with self.sessionmaker() as db:
                row = (await db.execute(text("""
                    SELECT bundle_id, total_quantity, reserved_count,
                           sold_count
                    FROM bundle_stock WHERE bundle_id = :b
                """), {"b": int(bundle_id)})).mappings().first()
        if not row:
            return None
        return BundleStock(
            bundle_id=int(row["bundle_id"]),
            total_quantity=int(row["total_quantity"]),
            reserved_count=int(row["reserved_count"]),
            sold_count=int(row["sold_count"]),
        )

    async def get_reservation(
            self, reservation_id: str) -> Optional[Reservation]:
        async with self.gated():
            async with self.sessionmaker() as db:
                row = (await db.execute(text("""
                    SELECT id, bundle_id, status, created_at
                    FROM bundle_reservations WHERE id = :id
                """), {"id": reservation_id})).mappings().first()
        if not row:
            return None
        return Reservation(
            reservation_id=row["id"],
            bundle_id=int(row["bundle_id"]),
            status=row["status"],
            created_at=float(row["created_at"]),
        )

    async def reserve(self, bundle_id: int) -> str:
        reservation_id = f"resv_{uuid.uuid4().hex}"
        now = now_ts()
        async with timeit("reservation.reserve"):
            async with self.gated():
                async with self.sessionmaker() as db:
                    async with db.begin():
                        held = (await db.execute(text("""
                            UPDATE bundle_stock
                            SET reserved_count = reserved_count + 1
                            WHERE bundle_id = :b
                              AND reserved_count + sold_count
                                  < total_quantity
                            RETURNING bundle_id
                        """), {"b": int(bundle_id)})).first()

                        if held is None:
                            known = (await db.execute(text(
                                "SELECT 1 FROM bundle_stock WHERE bundle_id=:b"
                            ), {"b": int(bundle_id)})).first()
                            if known is None:
                                raise ValidationError(
                                    f"unknown bundle {bundle_id}"
                                )
                            raise ReservationConflict(
                                "Bundle sold out", bundle_id=bundle_id
                            )

                        await db.execute(text("""
                            INSERT INTO bundle_reservations(
                                id, bundle_id, status, created_at, updated_at)
                            VALUES (:id, :b, 'pending', :now, :now)
                        """), {"id": reservation_id, "b": int(bundle_id),
                               "now": now})

        log.info("reservation_created", bundle_id=bundle_id,
                 reservation_id=reservation_id)
        return reservation_id

    async def _resolve(self, reservation_id: str, new_status: str,
                       counter_sql: str) -> bool:
        async with self.gated():
            async with self.sessionmaker() as db:
                async with db.begin():
                    row = (await db.execute(text("""
                        UPDATE bundle_reservations
                        SET status = :s, updated_at = :now
                        WHERE id = :id AND status = :pending
                        RETURNING bundle_id
                    """), {"s": new_status, "now": now_ts(),
                           "id": reservation_id,
                           "pending": R_PENDING})).first()
                    if row is None:
                        return False
                    await db.execute(text(counter_sql), {"b": int(row[0])})
        return True

    async def release(self, reservation_id: str) -> bool:
        """Return the unit to availability. Released or sold: no-op."""
        async with timeit("reservation.release"):
            changed = await self._resolve(reservation_id, R_RELEASED, """
                UPDATE bundle_stock
                SET reserved_count = reserved_count - 1
                WHERE bundle_id = :b
            """)
        if changed:
            log.info("reservation_released", reservation_id=reservation_id)
        return changed

    async def finalize(self, reservation_id: str) -> bool:
        """Move a pending hold to sold."""
        async with timeit("reservation.finalize"):
            changed = await self._resolve(reservation_id, R_SOLD, """
                UPDATE bundle_stock
                SET reserved_count = reserved_count - 1,
                    sold_count = sold_count + 1
                WHERE bundle_id = :b
            """)
        if changed:
            log.info("reservation_sold", reservation_id=reservation_id)
        return changed
