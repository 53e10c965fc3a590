"""Redis-only behaviour of the reservation and provider order stores."""
import pytest

from questgate.model.providerorder._redis import (
    PENDING_INDEX, ProviderOrderStore, k_po,
)
from questgate.model.reservation._redis import (
    ReservationStore, k_resv, k_stock,
)


@pytest.fixture
def resv_store(fake_redis):
    return ReservationStore(fake_redis)


@pytest.fixture
def order_store(fake_redis):
    return ProviderOrderStore(fake_redis, ttl_seconds=60)


class TestReservationScripts:
    @pytest.mark.asyncio
    async def test_reservation_remembers_its_stock_key(self, resv_store,
                                                       fake_redis):
        await resv_store.ensure_stock(4, 2)
        rid = await resv_store.reserve(4)

        h = await fake_redis.hgetall(k_resv(rid))
        assert h["stock_key"] == k_stock(4)
        assert h["status"] == "pending"

    @pytest.mark.asyncio
    async def test_resolve_refuses_foreign_stock_key(self, resv_store,
                                                     fake_redis):
        await resv_store.ensure_stock(4, 2)
        await resv_store.ensure_stock(5, 2)
        rid = await resv_store.reserve(4)

        res = await resv_store._resolve(keys=[k_resv(rid), k_stock(5)],
                                        args=["released"])

        assert int(res) == -1
        assert (await resv_store.get_stock(4)).reserved_count == 1
        assert (await resv_store.get_stock(5)).reserved_count == 0

    @pytest.mark.asyncio
    async def test_resolve_of_missing_reservation(self, resv_store):
        assert await resv_store.release("resv_gone") is False
        assert await resv_store.finalize("resv_gone") is False


class TestProviderOrderIndex:
    @pytest.mark.asyncio
    async def test_status_change_leaves_pending_index(self, order_store,
                                                      fake_redis):
        await order_store.save("O-1", {"flow": "gamepass",
                                       "created_at": 100.0})
        assert await fake_redis.zcard(PENDING_INDEX) == 1

        assert await order_store.set_status("O-1", "cancelled") is True
        assert await order_store.set_status("O-1", "cancelled") is False

        assert await fake_redis.zcard(PENDING_INDEX) == 0
        assert (await order_store.get("O-1"))["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_set_status_of_unknown_order(self, order_store):
        assert await order_store.set_status("nope", "captured") is False

    @pytest.mark.asyncio
    async def test_expired_hash_is_swept_from_index(self, order_store,
                                                    fake_redis):
        await order_store.save("O-1", {"flow": "bundle",
                                       "created_at": 100.0,
                                       "owner": "abc"})
        await order_store.save("O-2", {"flow": "webshop",
                                       "created_at": 200.0})
        await fake_redis.delete(k_po("O-1"))

        total, items = await order_store.get_recent(limit=10)

        assert total == 2
        assert [i["order_id"] for i in items] == ["O-2"]
        assert await fake_redis.zrange(PENDING_INDEX, 0, -1) == ["O-2"]

    @pytest.mark.asyncio
    async def test_fulfill_gate_and_event_key(self, order_store):
        first = await order_store.fulfill_and_mark_event("O-1", "evt-1")
        again = await order_store.fulfill_and_mark_event("O-1", "evt-1")
        other = await order_store.fulfill_and_mark_event("O-2", "evt-1")

        assert first == {"already_fulfilled": False, "event_seen": False}
        assert again == {"already_fulfilled": True, "event_seen": None}
        assert other == {"already_fulfilled": False, "event_seen": True}
