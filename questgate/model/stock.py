from __future__ import annotations
from dataclasses import dataclass

# Reservation statuses: pending -> sold | released, never back
R_PENDING = "pending"
R_SOLD = "sold"
R_RELEASED = "released"


@dataclass(frozen=True)
class BundleStock:
    bundle_id: int
    total_quantity: int
    reserved_count: int
    sold_count: int

    @property
    def available(self) -> int:
        return self.total_quantity - self.reserved_count - self.sold_count

    @property
    def sold_out(self) -> bool:
        return self.available <= 0

    def to_dict(self) -> dict:
        return {
            "bundle_id": self.bundle_id,
            "total": self.total_quantity,
            "reserved": self.reserved_count,
            "sold": self.sold_count,
            "available": self.available,
            "sold_out": self.sold_out,
        }


@dataclass(frozen=True)
class Reservation:
    reservation_id: str
    bundle_id: int
    status: str
    created_at: float
