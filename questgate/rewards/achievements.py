"""
Achievement progress and claims.

Unlocks are decided by the server (`check_unlocks`); this side only reports
progress and turns a claim into exactly one credit. A second claim, or a claim
on something still locked, is an informational rejection.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set, Tuple

from ..errors import AlreadyClaimed, IntegrationDefect, NotUnlocked
from ..errors import ValidationError
from ..helpers import as_bool, as_int
from ..logs import get_logger

if TYPE_CHECKING:
    from ..gameapi import GameApiClient
    from ..session import SessionContext

log = get_logger(__name__)

REQUIREMENT_TYPES = ("count", "streak", "level", "spend", "custom")


@dataclass(frozen=True)
class Achievement:
    id: int
    code: str
    name: str
    description: str
    category: str
    requirement_type: str
    requirement_value: int
    reward_coins: int
    reward_vip: int
    rarity: str
    is_hidden: bool

    @classmethod
    def from_body(cls, raw: Dict[str, Any]) -> "Achievement":
        return cls(
            id=as_int(raw.get("id")),
            code=str(raw.get("code") or ""),
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            category=str(raw.get("category") or ""),
            requirement_type=str(raw.get("requirement_type") or "custom"),
            requirement_value=as_int(raw.get("requirement_value")),
            reward_coins=as_int(raw.get("reward_coins")),
            reward_vip=as_int(raw.get("reward_vip")),
            rarity=str(raw.get("rarity") or "common"),
            is_hidden=as_bool(raw.get("is_hidden", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "requirement_type": self.requirement_type,
            "requirement_value": self.requirement_value,
            "reward_coins": self.reward_coins,
            "reward_vip": self.reward_vip,
            "rarity": self.rarity,
            "is_hidden": self.is_hidden,
        }


@dataclass(frozen=True)
class AchievementProgress:
    achievement: Achievement
    current_value: int
    progress_percent: float
    is_unlocked: bool
    is_claimed: bool
    unlocked_at: Optional[str] = None

    @property
    def claimable(self) -> bool:
        return self.is_unlocked and not self.is_claimed

    @classmethod
    def from_body(cls, raw: Dict[str, Any]) -> "AchievementProgress":
        unlocked = as_bool(raw.get("is_unlocked", False))
        claimed = as_bool(raw.get("is_claimed", False))
        if claimed and not unlocked:
            log.error("integration_defect", source="achievements.php",
                      achievement_id=raw.get("id"),
                      reason="claimed but not unlocked")
            raise IntegrationDefect(
                f"achievement {raw.get('id')} is claimed but not unlocked"
            )
        percent = float(raw.get("progress_percent") or 0)
        return cls(
            achievement=Achievement.from_body(raw),
            current_value=as_int(raw.get("current_value")),
            progress_percent=min(100.0, max(0.0, percent)),
            is_unlocked=unlocked,
            is_claimed=claimed,
            unlocked_at=raw.get("unlocked_at") or None,
        )

    def to_dict(self) -> Dict[str, Any]:
        out = self.achievement.to_dict()
        out.update({
            "current_value": self.current_value,
            "progress_percent": self.progress_percent,
            "is_unlocked": self.is_unlocked,
            "is_claimed": self.is_claimed,
            "unlocked_at": self.unlocked_at,
        })
        return out


@dataclass(frozen=True)
class NewlyUnlocked:
    id: int
    code: str
    name: str
    rarity: str
    reward_coins: int
    reward_vip: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "code": self.code, "name": self.name,
            "rarity": self.rarity, "reward_coins": self.reward_coins,
            "reward_vip": self.reward_vip,
        }


@dataclass(frozen=True)
class ClaimReward:
    achievement_id: int
    name: str
    coins: int
    vip: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "achievement_id": self.achievement_id,
            "achievement_name": self.name,
            "coins": self.coins,
            "vip": self.vip,
        }


def progress_stats(items: List[AchievementProgress]) -> Dict[str, int]:
    unlocked = sum(1 for p in items if p.is_unlocked)
    claimed = sum(1 for p in items if p.is_claimed)
    return {
        "total": len(items),
        "unlocked": unlocked,
        "claimed": claimed,
        "unclaimed": unlocked - claimed,
    }


class AchievementEngine:
    def __init__(self, api: "GameApiClient") -> None:
        self.api = api
        self._claiming: Set[Tuple[str, int, int]] = set()

    async def catalog(self) -> List[Achievement]:
        body = await self.api.list_achievements()
        return [
            Achievement.from_body(raw)
            for raw in body.get("achievements") or []
            if isinstance(raw, dict)
        ]

    async def progress(self, session: "SessionContext",
                       character_id: int) -> List[AchievementProgress]:
        body = await self.api.achievement_progress(session, character_id)
        if not body.get("success", True):
            raise ValidationError(
                str(body.get("error") or body.get("message")
                    or "progress unavailable")
            )
        return [
            AchievementProgress.from_body(raw)
            for raw in body.get("achievements") or []
            if isinstance(raw, dict)
        ]

    async def check_unlocks(self, session: "SessionContext",
                            character_id: int) -> List[NewlyUnlocked]:
        body = await self.api.check_achievement_unlocks(session, character_id)
        unlocked = [
            NewlyUnlocked(
                id=as_int(raw.get("id")),
                code=str(raw.get("code") or ""),
                name=str(raw.get("name") or ""),
                rarity=str(raw.get("rarity") or "common"),
                reward_coins=as_int(raw.get("reward_coins")),
                reward_vip=as_int(raw.get("reward_vip")),
            )
            for raw in body.get("newly_unlocked") or []
            if isinstance(raw, dict)
        ]
        if unlocked:
            log.info("achievements_unlocked", count=len(unlocked),
                     ids=[a.id for a in unlocked])
        return unlocked

    async def claim(self, session: "SessionContext", achievement_id: int,
                    character_id: int) -> ClaimReward:
        if achievement_id <= 0:
            raise ValidationError("Invalid achievement ID")

        key = (session.token, character_id, achievement_id)
        if key in self._claiming:
            raise AlreadyClaimed("claim already in progress",
                                 achievement_id=achievement_id)
        self._claiming.add(key)
        try:
            body = await self.api.claim_achievement(
                session, achievement_id, character_id
            )
        finally:
            self._claiming.discard(key)

        if not body.get("success"):
            error = str(body.get("error") or body.get("message") or "")
            lowered = error.lower()
            if "already claimed" in lowered:
                raise AlreadyClaimed(error, achievement_id=achievement_id)
            if "not unlocked" in lowered:
                raise NotUnlocked(error, achievement_id=achievement_id)
            raise ValidationError(error or "claim rejected",
                                  achievement_id=achievement_id)

        reward = ClaimReward(
            achievement_id=achievement_id,
            name=str(body.get("achievement_name") or ""),
            coins=as_int(body.get("coins_earned")),
            vip=as_int(body.get("vip_earned")),
        )
        log.info("achievement_claimed", achievement_id=achievement_id,
                 coins=reward.coins, vip=reward.vip)
        return reward
