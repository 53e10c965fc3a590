"""Chance wheel status and spins."""
import pytest

from questgate.errors import IntegrationDefect, TooEarly, ValidationError
from questgate.rewards.spin import SpinWheel

STATUS = {
    "success": True, "can_spin": True, "spins_used": 0, "spins_per_day": 1,
    "spins_remaining": 1, "cooldown_hours": 24, "last_spin": None,
    "next_spin_at": None, "enabled": True,
}


@pytest.fixture
def wheel(api):
    return SpinWheel(api)


class TestSpinWheel:
    @pytest.mark.asyncio
    async def test_status(self, wheel, upstream, session):
        upstream.on("GET", "spin_wheel.php", "status", json=STATUS)
        status = await wheel.status(session)
        assert status.can_spin
        assert status.spins_remaining == 1

    @pytest.mark.asyncio
    async def test_disabled_wheel_cannot_spin(self, wheel, upstream,
                                              session):
        upstream.on("GET", "spin_wheel.php", "status",
                    json=dict(STATUS, enabled=False))
        status = await wheel.status(session)
        assert not status.can_spin

    @pytest.mark.asyncio
    async def test_spin(self, wheel, upstream, session):
        upstream.on("POST", "spin_wheel.php", "spin", json={
            "success": True,
            "winner": {"id": 3, "label": "100 Coins", "reward_type": "coins",
                       "reward_value": "100"},
            "winner_index": 2, "segment_count": 8, "reward_given": True,
            "spins_remaining": 0,
        })

        result = await wheel.spin(session, 12)

        assert result.reward_type == "coins"
        assert result.reward_value == 100
        assert result.reward_given
        assert result.winner_index == 2
        assert upstream.calls[0]["body"] == {"role_id": 12}

    @pytest.mark.asyncio
    async def test_no_spins_left(self, wheel, upstream, session):
        upstream.on("POST", "spin_wheel.php", "spin", status=429, json={
            "success": False, "message": "No spins remaining today",
        })
        with pytest.raises(TooEarly) as exc:
            await wheel.spin(session, 12)
        assert exc.value.detail["reason"] == "no_spins_remaining"

    @pytest.mark.asyncio
    async def test_disabled(self, wheel, upstream, session):
        upstream.on("POST", "spin_wheel.php", "spin", status=403, json={
            "success": False, "message": "Spin wheel is currently disabled",
        })
        with pytest.raises(TooEarly) as exc:
            await wheel.spin(session, 12)
        assert exc.value.to_dict()["reason"] == "disabled"

    @pytest.mark.asyncio
    async def test_missing_winner_is_a_defect(self, wheel, upstream,
                                              session):
        upstream.on("POST", "spin_wheel.php", "spin",
                    json={"success": True, "spins_remaining": 0})
        with pytest.raises(IntegrationDefect):
            await wheel.spin(session, 12)

    @pytest.mark.asyncio
    async def test_needs_a_character(self, wheel, upstream, session):
        with pytest.raises(ValidationError):
            await wheel.spin(session, 0)
        assert upstream.calls == []
