# model/reservation/__init__.py
import os
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("RESV_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import ReservationStore as _ReservationStore
else:
    from ._sql import ReservationStore as _ReservationStore


# Factory keeps server.py simple and constructor-agnostic:
def new_store(*, sessionmaker: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "ReservationStore(redis) requires r=redis.Redis"
            )
        return _ReservationStore(r=r)
    if sessionmaker is None or gated is None:
        raise RuntimeError(
            "ReservationStore(sql) requires sessionmaker= and gated="
        )
    return _ReservationStore(sessionmaker=sessionmaker, gated=gated)


ReservationStore = _ReservationStore
__all__ = ["ReservationStore", "new_store", "BACKEND"]
