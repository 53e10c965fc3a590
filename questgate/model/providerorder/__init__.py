import os
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
import redis.asyncio as redis

from ...infra.sql import Gated

BACKEND = os.getenv("ORDER_BACKEND", "sql").lower()  # 'sql' | 'redis'

if BACKEND == "redis":
    from ._redis import ProviderOrderStore as _ProviderOrderStore
else:
    from ._sql import ProviderOrderStore as _ProviderOrderStore


def new_store(*, sessionmaker: Optional[async_sessionmaker] = None,
              gated: Optional[Gated] = None,
              r: Optional[redis.Redis] = None,
              ttl_seconds: int = 3600):
    if BACKEND == "redis":
        if r is None:
            raise RuntimeError(
                "ProviderOrderStore(redis) requires r=redis.Redis"
            )
        return _ProviderOrderStore(r=r, ttl_seconds=ttl_seconds)
    if sessionmaker is None or gated is None:
        raise RuntimeError(
            "ProviderOrderStore(sql) requires sessionmaker= and gated="
        )
    return _ProviderOrderStore(sessionmaker=sessionmaker, gated=gated,
                               ttl_seconds=ttl_seconds)


ProviderOrderStore = _ProviderOrderStore
__all__ = ["ProviderOrderStore", "new_store", "BACKEND"]
