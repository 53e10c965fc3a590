"""Bundle stock reservations, on both the SQL and the Redis backend."""
import asyncio

import pytest

from questgate.errors import ReservationConflict, ValidationError


async def _counts(store, bundle_id):
    s = await store.get_stock(bundle_id)
    return s.reserved_count, s.sold_count


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_holds_one_unit(self, reservations):
        await reservations.ensure_stock(1, 3)
        rid = await reservations.reserve(1)

        assert rid.startswith("resv_")
        assert await _counts(reservations, 1) == (1, 0)
        resv = await reservations.get_reservation(rid)
        assert resv.status == "pending"
        assert resv.bundle_id == 1

    @pytest.mark.asyncio
    async def test_concurrent_reserve_on_last_unit(self, reservations):
        """Only one of many concurrent reservations gets a single unit."""
        await reservations.ensure_stock(5, 1)

        results = await asyncio.gather(
            *(reservations.reserve(5) for _ in range(8)),
            return_exceptions=True,
        )

        wins = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results
                     if isinstance(r, ReservationConflict)]
        assert len(wins) == 1
        assert len(conflicts) == 7
        stock = await reservations.get_stock(5)
        assert stock.available == 0
        assert stock.sold_out

    @pytest.mark.asyncio
    async def test_sold_out(self, reservations):
        await reservations.ensure_stock(2, 0)
        with pytest.raises(ReservationConflict):
            await reservations.reserve(2)

    @pytest.mark.asyncio
    async def test_unknown_bundle(self, reservations):
        with pytest.raises(ValidationError):
            await reservations.reserve(404)

    @pytest.mark.asyncio
    async def test_ensure_stock_keeps_existing_counters(self, reservations):
        await reservations.ensure_stock(3, 2)
        await reservations.reserve(3)
        await reservations.ensure_stock(3, 50)

        stock = await reservations.get_stock(3)
        assert stock.total_quantity == 2
        assert stock.reserved_count == 1


class TestResolve:
    @pytest.mark.asyncio
    async def test_double_release_is_a_noop(self, reservations):
        await reservations.ensure_stock(1, 2)
        rid = await reservations.reserve(1)

        assert await reservations.release(rid) is True
        assert await _counts(reservations, 1) == (0, 0)
        assert await reservations.release(rid) is False
        assert await _counts(reservations, 1) == (0, 0)

    @pytest.mark.asyncio
    async def test_finalize_moves_to_sold(self, reservations):
        await reservations.ensure_stock(1, 2)
        rid = await reservations.reserve(1)

        assert await reservations.finalize(rid) is True
        assert await _counts(reservations, 1) == (0, 1)
        assert await reservations.finalize(rid) is False
        assert await _counts(reservations, 1) == (0, 1)

    @pytest.mark.asyncio
    async def test_release_after_sold_does_nothing(self, reservations):
        await reservations.ensure_stock(1, 1)
        rid = await reservations.reserve(1)
        await reservations.finalize(rid)

        assert await reservations.release(rid) is False
        assert (await reservations.get_reservation(rid)).status == "sold"
        assert await _counts(reservations, 1) == (0, 1)

    @pytest.mark.asyncio
    async def test_finalize_after_release_does_nothing(self, reservations):
        await reservations.ensure_stock(1, 1)
        rid = await reservations.reserve(1)
        await reservations.release(rid)

        assert await reservations.finalize(rid) is False
        assert await _counts(reservations, 1) == (0, 0)

    @pytest.mark.asyncio
    async def test_released_unit_can_be_reserved_again(self, reservations):
        await reservations.ensure_stock(9, 1)
        first = await reservations.reserve(9)
        await reservations.release(first)

        second = await reservations.reserve(9)
        assert second != first
        assert await _counts(reservations, 9) == (1, 0)

    @pytest.mark.asyncio
    async def test_unknown_reservation(self, reservations):
        assert await reservations.release("resv_missing") is False
        assert await reservations.finalize("resv_missing") is False
        assert await reservations.get_reservation("resv_missing") is None
