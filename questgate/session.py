"""
Per-session state.

The auth subsystem owns token issuance; we only carry the token to every
remote call. Anything the browser used to keep in globals (selected
character, countdown targets) lives on a SessionState created when a token is
first seen and dropped on logout, after sitting idle, or when the registry
is full and it is the least recently seen.
"""
from __future__ import annotations
import hashlib
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional

from .helpers import now_ts
from .rewards.cooldown import CountdownBoard


@dataclass(frozen=True)
class Character:
    id: int
    name: str


@dataclass
class SessionContext:
    token: str
    username: str = ""
    csrf_token: Optional[str] = None
    fingerprint: str = ""
    selected_character: Optional[Character] = None

    @property
    def owner(self) -> str:
        """Stable tag for orders placed with this token; never the token."""
        return hashlib.sha256(self.token.encode()).hexdigest()[:32]

    def auth_headers(self, state_changing: bool = False) -> Dict[str, str]:
        headers = {
            "Accept": "application/json",
            "X-Session-Token": self.token,
            "Authorization": f"Bearer {self.token}",
        }
        if state_changing and self.csrf_token:
            headers["X-CSRF-Token"] = self.csrf_token
        return headers


@dataclass
class SessionState:
    context: SessionContext
    countdowns: CountdownBoard
    started_at: float = field(default_factory=now_ts)
    last_seen: float = field(default_factory=now_ts)


class SessionRegistry:
    def __init__(self, clock=now_ts, *, idle_seconds: float = 4 * 3600,
                 max_sessions: int = 10_000) -> None:
        self._clock = clock
        self.idle_seconds = idle_seconds
        self.max_sessions = max_sessions
        # least recently seen first
        self._sessions: "OrderedDict[str, SessionState]" = OrderedDict()

    def attach(self, token: str, *, username: str = "",
               csrf_token: Optional[str] = None,
               fingerprint: str = "") -> SessionState:
        now = self._clock()
        state = self._sessions.get(token)
        if state is not None and now - state.last_seen > self.idle_seconds:
            self.end(token)
            state = None
        if state is None:
            state = SessionState(
                context=SessionContext(token=token),
                countdowns=CountdownBoard(clock=self._clock),
                started_at=now,
                last_seen=now,
            )
            self._sessions[token] = state
        else:
            state.last_seen = now
            self._sessions.move_to_end(token)
        self.prune(keep=token)

        ctx = state.context
        # headers may arrive on some requests and not on others
        if username:
            ctx.username = username
        if csrf_token:
            ctx.csrf_token = csrf_token
        if fingerprint:
            ctx.fingerprint = fingerprint
        return state

    def prune(self, keep: Optional[str] = None) -> int:
        """Drop idle sessions and the oldest ones beyond the cap."""
        now = self._clock()
        dropped = 0
        while self._sessions:
            token, state = next(iter(self._sessions.items()))
            if token == keep:
                break
            idle = now - state.last_seen > self.idle_seconds
            if not idle and len(self._sessions) <= self.max_sessions:
                break
            self.end(token)
            dropped += 1
        return dropped

    def get(self, token: str) -> Optional[SessionState]:
        return self._sessions.get(token)

    def end(self, token: str) -> bool:
        state = self._sessions.pop(token, None)
        if state is None:
            return False
        state.countdowns.clear()
        state.context.selected_character = None
        return True

    def __len__(self) -> int:
        return len(self._sessions)
