"""
Vote cooldowns.

The server's remaining-seconds value is the only input to a countdown. When a
site is first seen cooling down we pin a target instant (`now + seconds`) and
count towards it locally. Later polls that still report time left don't move
it; a poll reporting none ends it early. When it passes the site becomes
votable again without another round trip.
"""
from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Set

from ..errors import TooEarly, ValidationError
from ..helpers import as_bool, as_int, format_hms, now_ts, parse_iso
from ..logs import get_logger

if TYPE_CHECKING:
    from ..gameapi import GameApiClient
    from ..session import SessionContext

log = get_logger(__name__)


@dataclass(frozen=True)
class VoteSite:
    id: int
    name: str
    url: str
    coins_reward: int
    vip_reward: int
    cooldown_hours: float
    last_vote_time: Optional[str] = None
    next_vote_time: Optional[str] = None
    seconds_remaining: Optional[int] = None
    can_vote: bool = True

    @property
    def cooldown_seconds(self) -> float:
        return max(0.0, float(self.cooldown_hours) * 3600)

    @classmethod
    def from_records(cls, site: Dict[str, Any],
                     status: Optional[Dict[str, Any]]) -> "VoteSite":
        status = status or {}
        last_vote = status.get("last_vote_time") or None

        seconds: Optional[int] = None
        if status.get("seconds_remaining") is not None:
            seconds = as_int(status["seconds_remaining"])
        elif status.get("time_remaining") is not None:
            # legacy field, milliseconds
            seconds = math.ceil(as_int(status["time_remaining"]) / 1000)

        if seconds is not None:
            can_vote = seconds <= 0
        else:
            # no duration reported: never voted here, or only the flag
            can_vote = as_bool(status.get("can_vote", True))

        return cls(
            id=as_int(site.get("id")),
            name=str(site.get("name") or ""),
            url=str(site.get("url") or ""),
            coins_reward=as_int(site.get("coins_reward")),
            vip_reward=as_int(site.get("vip_reward")),
            cooldown_hours=float(site.get("cooldown_hours") or 0),
            last_vote_time=last_vote,
            next_vote_time=status.get("next_vote_time") or None,
            seconds_remaining=seconds,
            can_vote=can_vote,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "coins_reward": self.coins_reward,
            "vip_reward": self.vip_reward,
            "cooldown_hours": self.cooldown_hours,
            "last_vote_time": self.last_vote_time,
            "next_vote_time": self.next_vote_time,
        }


@dataclass(frozen=True)
class StreakInfo:
    current: int = 0
    longest: int = 0
    tier: Optional[Dict[str, Any]] = None
    multiplier: float = 1.0
    next_tier: Optional[Dict[str, Any]] = None
    increased: bool = False

    @classmethod
    def from_body(cls, raw: Optional[Dict[str, Any]]) -> "StreakInfo":
        raw = raw or {}
        return cls(
            current=as_int(raw.get("current")),
            longest=as_int(raw.get("longest")),
            tier=raw.get("tier") or None,
            multiplier=float(raw.get("multiplier") or 1.0),
            next_tier=raw.get("next_tier") or None,
            increased=as_bool(raw.get("increased", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current": self.current,
            "longest": self.longest,
            "tier": self.tier,
            "multiplier": self.multiplier,
            "next_tier": self.next_tier,
        }


@dataclass(frozen=True)
class VoteSummary:
    coins: int = 0
    vip_points: int = 0
    total_votes: int = 0
    streak: StreakInfo = field(default_factory=StreakInfo)


@dataclass(frozen=True)
class VoteResult:
    site_id: int
    coins_earned: int
    vip_earned: int
    bonus_coins: int
    new_coins_total: Optional[int]
    new_vip_total: Optional[int]
    streak: StreakInfo

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": True,
            "site_id": self.site_id,
            "coins_earned": self.coins_earned,
            "vip_earned": self.vip_earned,
            "bonus_coins": self.bonus_coins,
            "new_coins_total": self.new_coins_total,
            "new_vip_total": self.new_vip_total,
            "streak": self.streak.to_dict(),
        }


@dataclass(frozen=True)
class Eligibility:
    can_vote_now: bool
    remaining: Optional[timedelta]

    def display(self) -> str:
        return format_hms(self.remaining)


class CountdownBoard:
    """Per-session countdown targets, keyed by site id."""

    def __init__(self, clock=now_ts) -> None:
        self._clock = clock
        self._targets: Dict[int, float] = {}
        self._caps: Dict[int, float] = {}
        self.sites: Dict[int, VoteSite] = {}
        self.in_flight: Set[int] = set()

    def now(self) -> float:
        return self._clock()

    def target(self, site_id: int) -> Optional[float]:
        return self._targets.get(site_id)

    def observe(self, site: VoteSite) -> Optional[float]:
        self.sites[site.id] = site
        seconds = site.seconds_remaining
        if seconds is None or seconds <= 0:
            # the server says the cooldown is over
            self._targets.pop(site.id, None)
            self._caps.pop(site.id, None)
            return None

        now = self._clock()
        existing = self._targets.get(site.id)
        if existing is not None and existing > now:
            return existing

        if site.cooldown_seconds > 0:
            seconds = min(seconds, site.cooldown_seconds)
        self._targets[site.id] = now + seconds
        self._caps[site.id] = site.cooldown_seconds
        return self._targets[site.id]

    def pin(self, site: VoteSite, seconds: float) -> None:
        """Set a target from an authoritative server reply."""
        if site.cooldown_seconds > 0:
            seconds = min(seconds, site.cooldown_seconds)
        self._targets[site.id] = self._clock() + max(0.0, seconds)
        self._caps[site.id] = site.cooldown_seconds

    def restart(self, site: VoteSite) -> None:
        self._targets[site.id] = self._clock() + site.cooldown_seconds
        self._caps[site.id] = site.cooldown_seconds

    def remaining(self, site_id: int) -> Optional[timedelta]:
        target = self._targets.get(site_id)
        if target is None:
            return None
        left = max(0.0, target - self._clock())
        cap = self._caps.get(site_id) or 0
        if cap > 0:
            left = min(left, cap)
        return timedelta(seconds=left)

    def clear(self) -> None:
        self._targets.clear()
        self._caps.clear()
        self.sites.clear()
        self.in_flight.clear()


def pending_rewards(sites: List[VoteSite],
                    board: Optional[CountdownBoard] = None) -> Dict[str, int]:
    """Coins and VIP points waiting on sites that can be voted right now."""
    coins = vip = count = 0
    for site in sites:
        if board is not None:
            votable = eligibility(board, site).can_vote_now
        else:
            votable = site.can_vote
        if votable:
            coins += site.coins_reward
            vip += site.vip_reward
            count += 1
    return {"coins": coins, "vip": vip, "sites": count}


def eligibility(board: CountdownBoard, site: VoteSite) -> Eligibility:
    remaining = board.remaining(site.id)
    if remaining is None:
        # no countdown: trust the flag from the last poll
        return Eligibility(can_vote_now=site.can_vote, remaining=None)
    if remaining <= timedelta(0):
        return Eligibility(can_vote_now=True, remaining=timedelta(0))
    return Eligibility(can_vote_now=False, remaining=remaining)


class CooldownEngine:
    def __init__(self, api: "GameApiClient", board: CountdownBoard) -> None:
        self.api = api
        self.board = board
        self.summary = VoteSummary()

    async def refresh(self, session: "SessionContext") -> List[VoteSite]:
        listing = await self.api.list_vote_sites()
        raw_sites = listing.get("sites") or []
        statuses: Dict[str, Any] = {}
        polled = False
        if session.username:
            body = await self.api.vote_status(session)
            if body.get("success"):
                polled = True
                # PHP json_encode turns int keys into strings
                raw_statuses = body.get("site_statuses") or {}
                statuses = {str(k): v for k, v in raw_statuses.items()}
                self.summary = VoteSummary(
                    coins=as_int(body.get("coins")),
                    vip_points=as_int(body.get("vip_points")),
                    total_votes=as_int(body.get("total_votes")),
                    streak=StreakInfo.from_body(body.get("streak")),
                )
            else:
                log.warning("vote_status_rejected",
                            message=body.get("message"))

        sites = []
        for raw in raw_sites:
            if not isinstance(raw, dict):
                continue
            status = statuses.get(str(raw.get("id")))
            site = VoteSite.from_records(raw, status)
            if polled:
                self.board.observe(site)
            else:
                # no status to go on; keep whatever countdown we have
                self.board.sites[site.id] = site
            sites.append(site)
        return sites

    def get_eligibility(self, site: VoteSite) -> Eligibility:
        return eligibility(self.board, site)

    async def _site(self, session: "SessionContext", site_id: int) -> VoteSite:
        site = self.board.sites.get(site_id)
        if site is None:
            await self.refresh(session)
            site = self.board.sites.get(site_id)
        if site is None:
            raise ValidationError(f"unknown vote site {site_id}")
        return site

    async def submit_vote(self, session: "SessionContext",
                          site_id: int) -> VoteResult:
        if not session.username:
            raise ValidationError("login required to vote")
        site = await self._site(session, site_id)

        elig = self.get_eligibility(site)
        if not elig.can_vote_now:
            raise TooEarly(
                f"You can vote again in {elig.display()}",
                site_id=site_id, remaining=elig.display(),
            )
        if site_id in self.board.in_flight:
            raise TooEarly("vote already in progress", site_id=site_id)

        self.board.in_flight.add(site_id)
        try:
            body = await self.api.submit_vote(session, site_id)
        finally:
            self.board.in_flight.discard(site_id)

        if not body.get("success"):
            message = str(body.get("message") or "vote rejected")
            if "vote again" in message.lower():
                nxt = parse_iso(body.get("next_vote_time"))
                if nxt is not None:
                    self.board.pin(site, nxt - self.board.now())
                raise TooEarly(message, site_id=site_id,
                               remaining=format_hms(
                                   self.board.remaining(site_id)))
            raise ValidationError(message, site_id=site_id)

        self.board.restart(site)
        result = VoteResult(
            site_id=site_id,
            coins_earned=as_int(body.get("coins_earned"), site.coins_reward),
            vip_earned=as_int(body.get("vip_points_earned"), site.vip_reward),
            bonus_coins=as_int(body.get("bonus_coins")),
            new_coins_total=(
                as_int(body["new_coins_total"])
                if body.get("new_coins_total") is not None else None
            ),
            new_vip_total=(
                as_int(body["new_vip_total"])
                if body.get("new_vip_total") is not None else None
            ),
            streak=StreakInfo.from_body(body.get("streak")),
        )
        log.info("vote_credited", site_id=site_id,
                 coins=result.coins_earned, vip=result.vip_earned)
        return result
