"""Daily chance wheel. The server picks the segment and counts the spins."""
from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from ..errors import IntegrationDefect, TooEarly, ValidationError
from ..helpers import as_bool, as_int
from ..logs import get_logger

if TYPE_CHECKING:
    from ..gameapi import GameApiClient
    from ..session import SessionContext

log = get_logger(__name__)

REWARD_TYPES = ("coins", "vip", "zen", "nothing")


@dataclass(frozen=True)
class SpinStatus:
    can_spin: bool
    spins_used: int
    spins_per_day: int
    spins_remaining: int
    cooldown_hours: int
    last_spin: Optional[str]
    next_spin_at: Optional[str]
    enabled: bool

    @classmethod
    def from_body(cls, body: Dict[str, Any]) -> "SpinStatus":
        enabled = as_bool(body.get("enabled", True))
        remaining = as_int(body.get("spins_remaining"))
        return cls(
            can_spin=enabled and as_bool(body.get("can_spin", remaining > 0)),
            spins_used=as_int(body.get("spins_used")),
            spins_per_day=as_int(body.get("spins_per_day"), 1),
            spins_remaining=remaining,
            cooldown_hours=as_int(body.get("cooldown_hours"), 24),
            last_spin=body.get("last_spin") or None,
            next_spin_at=body.get("next_spin_at") or None,
            enabled=enabled,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "can_spin": self.can_spin,
            "spins_used": self.spins_used,
            "spins_per_day": self.spins_per_day,
            "spins_remaining": self.spins_remaining,
            "cooldown_hours": self.cooldown_hours,
            "last_spin": self.last_spin,
            "next_spin_at": self.next_spin_at,
            "enabled": self.enabled,
        }


@dataclass(frozen=True)
class SpinResult:
    label: str
    reward_type: str
    reward_value: int
    reward_given: bool
    winner_index: int
    segment_count: int
    spins_remaining: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "label": self.label,
            "reward_type": self.reward_type,
            "reward_value": self.reward_value,
            "reward_given": self.reward_given,
            "winner_index": self.winner_index,
            "segment_count": self.segment_count,
            "spins_remaining": self.spins_remaining,
        }


class SpinWheel:
    def __init__(self, api: "GameApiClient") -> None:
        self.api = api
        self._spinning: Set[str] = set()

    async def segments(self) -> List[Dict[str, Any]]:
        body = await self.api.spin_segments()
        return [
            {
                "id": as_int(s.get("id")),
                "label": str(s.get("label") or ""),
                "reward_type": str(s.get("reward_type") or "nothing"),
                "reward_value": as_int(s.get("reward_value")),
                "color": s.get("color"),
                "icon": s.get("icon"),
            }
            for s in body.get("segments") or []
            if isinstance(s, dict)
        ]

    async def status(self, session: "SessionContext") -> SpinStatus:
        body = await self.api.spin_status(session)
        if not body.get("success", True):
            raise ValidationError(str(body.get("message") or "status failed"))
        return SpinStatus.from_body(body)

    async def spin(self, session: "SessionContext",
                   role_id: int) -> SpinResult:
        if role_id <= 0:
            raise ValidationError("select a character to receive the reward")
        if session.token in self._spinning:
            raise TooEarly("spin already in progress")

        self._spinning.add(session.token)
        try:
            body = await self.api.spin(session, role_id)
        finally:
            self._spinning.discard(session.token)

        if not body.get("success"):
            message = str(body.get("message") or "spin rejected")
            if "disabled" in message.lower():
                raise TooEarly(message, reason="disabled")
            if "no spins" in message.lower():
                raise TooEarly(message, reason="no_spins_remaining")
            raise ValidationError(message)

        winner = body.get("winner")
        if not isinstance(winner, dict):
            log.error("integration_defect", source="spin_wheel.php",
                      reason="winner missing")
            raise IntegrationDefect("spin reply carries no winner")

        reward_type = str(winner.get("reward_type") or "nothing")
        if reward_type not in REWARD_TYPES:
            log.warning("spin_unknown_reward_type", reward_type=reward_type)
        result = SpinResult(
            label=str(winner.get("label") or ""),
            reward_type=reward_type,
            reward_value=as_int(winner.get("reward_value")),
            reward_given=as_bool(body.get("reward_given", False)),
            winner_index=as_int(body.get("winner_index")),
            segment_count=as_int(body.get("segment_count")),
            spins_remaining=as_int(body.get("spins_remaining")),
        )
        log.info("spin_resolved", role_id=role_id,
                 reward_type=result.reward_type,
                 reward_value=result.reward_value,
                 reward_given=result.reward_given)
        return result
