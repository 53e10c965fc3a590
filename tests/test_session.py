"""Session registry lifetime."""
from questgate.session import Character, SessionRegistry


class TestSessionRegistry:
    def test_attach_reuses_state(self, clock):
        sessions = SessionRegistry(clock)
        first = sessions.attach("tok-1", username="hero")
        second = sessions.attach("tok-1")
        assert first is second
        assert second.context.username == "hero"

    def test_idle_sessions_are_evicted(self, clock):
        sessions = SessionRegistry(clock, idle_seconds=600)
        sessions.attach("stale-1")
        sessions.attach("stale-2")
        clock.advance(601)

        sessions.attach("fresh")

        assert len(sessions) == 1
        assert sessions.get("stale-1") is None

    def test_activity_keeps_session(self, clock):
        sessions = SessionRegistry(clock, idle_seconds=600)
        state = sessions.attach("tok-1")
        state.context.selected_character = Character(7, "Aria")
        for _ in range(3):
            clock.advance(500)
            sessions.attach("tok-1")
        assert sessions.get("tok-1").context.selected_character.id == 7

    def test_idle_token_starts_over(self, clock):
        sessions = SessionRegistry(clock, idle_seconds=600)
        old = sessions.attach("tok-1")
        old.context.selected_character = Character(7, "Aria")
        clock.advance(601)

        state = sessions.attach("tok-1")

        assert state is not old
        assert state.context.selected_character is None
        assert old.countdowns.sites == {}

    def test_cap_drops_least_recently_seen(self, clock):
        sessions = SessionRegistry(clock, max_sessions=2)
        sessions.attach("a")
        clock.advance(1)
        sessions.attach("b")
        clock.advance(1)
        sessions.attach("a")
        clock.advance(1)

        sessions.attach("c")

        assert len(sessions) == 2
        assert sessions.get("b") is None
        assert sessions.get("a") is not None

    def test_end(self, clock):
        sessions = SessionRegistry(clock)
        sessions.attach("tok-1")
        assert sessions.end("tok-1") is True
        assert sessions.end("tok-1") is False
