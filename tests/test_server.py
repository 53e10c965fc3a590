"""HTTP surface, end to end against a fake game API."""
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from questgate.config import Settings
from questgate.payments import SignedWebhook
from questgate.server import create_app

API_BASE = "http://game.test/api"
SECRET = "whsec-test"
AUTH = {"Authorization": "Bearer tok-1", "X-Username": "hero",
        "X-Fingerprint": "fp-1"}
OTHER = {"Authorization": "Bearer tok-2", "X-Username": "villain"}
ADMIN = {"X-Admin-Token": "adm-1"}
CHECKOUT = "https://pay.example/checkout?token={}"


@pytest.fixture
def client(tmp_path, upstream):
    settings = Settings(
        game_api_base=API_BASE,
        database_url=f"sqlite:///{tmp_path / 'server.db'}",
        webhook_secret=SECRET,
        log_level="WARNING",
        admin_token=ADMIN["X-Admin-Token"],
    )
    app = create_app(settings,
                     transport=httpx.MockTransport(upstream.handler))
    with TestClient(app) as c:
        yield c


def _webhook(client, kind, order_id, idem=None):
    payload = json.dumps({"type": f"payment.{kind}", "order_id": order_id,
                          "idempotency_key": idem}).encode()
    sig = SignedWebhook(SECRET).sign(payload)
    return client.post("/payments/webhook", content=payload,
                       headers={"x-questgate-signature": sig,
                                "content-type": "application/json"})


def _bundles(upstream, stock=2):
    upstream.on("GET", "bundles.php", "list", json={
        "success": True,
        "bundles": [{"id": 1, "name": "Starter", "stock": stock}],
    })
    upstream.on("POST", "bundles.php", "purchase",
                json={"success": True, "url": CHECKOUT.format("B-1")})
    upstream.on("POST", "bundle_cancel.php", json={"success": True})


class TestOrders:
    def test_requires_session(self, client):
        r = client.post("/api/orders", json={"type": "gamepass",
                                             "tier": "gold"})
        assert r.status_code == 401

    def test_gamepass_extend(self, client, upstream):
        upstream.on("POST", "gamepass_extend.php",
                    json={"success": True, "url": CHECKOUT.format("ABC123")})
        r = client.post("/api/orders", headers=AUTH, json={
            "type": "gamepass_extend", "tier": "elite", "days": 7,
        })
        assert r.status_code == 200
        assert r.json() == {"ok": True, "order_id": "ABC123",
                            "flow": "gamepass_extend"}

    def test_session_token_in_query(self, client, upstream):
        upstream.on("POST", "gamepass_purchase.php",
                    json={"success": True, "url": CHECKOUT.format("GP-1")})
        r = client.post("/api/orders?sessionToken=tok-9",
                        json={"type": "gamepass", "tier": "gold"})
        assert r.json()["order_id"] == "GP-1"

    def test_validation_error(self, client, upstream):
        r = client.post("/api/orders", headers=AUTH, json={
            "type": "gamepass_extend", "tier": "elite", "days": 91,
        })
        assert r.status_code == 400
        assert r.json()["error"] == "validation"
        assert upstream.calls == []

    def test_upstream_failure_is_retryable(self, client, upstream):
        upstream.on("POST", "gamepass_purchase.php", status=503,
                    json={"success": False, "message": "maintenance"})
        r = client.post("/api/orders", headers=AUTH,
                        json={"type": "gamepass", "tier": "gold"})
        assert r.status_code == 502
        assert r.json()["retryable"] is True

    def test_bundle_uses_selected_character(self, client, upstream):
        _bundles(upstream)
        client.post("/api/session/character", headers=AUTH,
                    json={"id": 44, "name": "Aria"})

        r = client.post("/api/orders", headers=AUTH,
                        json={"type": "bundle", "bundleId": 1})

        assert r.json()["order_id"] == "B-1"
        body = upstream.calls_to("bundles.php", "purchase")[0]["body"]
        assert body["character_id"] == 44
        assert body["character_name"] == "Aria"

    def test_bundle_sold_out(self, client, upstream):
        _bundles(upstream, stock=0)
        r = client.post("/api/orders", headers=AUTH, json={
            "type": "bundle", "bundleId": 1, "characterId": 2,
            "characterName": "Aria",
        })
        assert r.status_code == 409
        assert r.json()["error"] == "reservation_conflict"


class TestPaymentCallbacks:
    def _order(self, client, upstream):
        _bundles(upstream)
        r = client.post("/api/orders", headers=AUTH, json={
            "type": "bundle", "bundleId": 1, "characterId": 2,
            "characterName": "Aria",
        })
        assert r.status_code == 200

    def test_webhook_capture(self, client, upstream):
        self._order(client, upstream)

        r = _webhook(client, "succeeded", "B-1", "evt-1")
        assert r.json() == {"ok": True, "order_status": "PAID"}
        again = _webhook(client, "succeeded", "B-1", "evt-1")
        assert again.json()["idempotent"] is True

        stock = client.get("/api/bundles/1/stock").json()
        assert (stock["reserved"], stock["sold"]) == (0, 1)

    def test_webhook_bad_signature(self, client):
        r = client.post("/payments/webhook", content=b"{}",
                        headers={"x-questgate-signature": "nope"})
        assert r.status_code == 400

    def test_failure_return_releases(self, client, upstream):
        self._order(client, upstream)
        pending = client.get("/api/orders/pending", headers=ADMIN)
        assert pending.json()["total"] == 1

        r = client.get("/payment/failed",
                       params={"session_id": "B-1", "sessionToken": "tok-1"})
        assert r.json()["cancelled"] is True
        r = client.get("/payment/failed", params={"session_id": "B-1"},
                       headers=AUTH)
        assert r.json()["cancelled"] is False

        stock = client.get("/api/bundles/1/stock").json()
        assert stock["reserved"] == 0
        pending = client.get("/api/orders/pending", headers=ADMIN)
        assert pending.json()["total"] == 0

    def test_explicit_cancel(self, client, upstream):
        self._order(client, upstream)
        r = client.post("/api/orders/B-1/cancel", headers=AUTH)
        assert r.json() == {"ok": True, "order_id": "B-1",
                            "cancelled": True}

    def test_other_session_cannot_cancel(self, client, upstream):
        self._order(client, upstream)

        r = client.post("/api/orders/B-1/cancel", headers=OTHER)
        assert r.status_code == 404
        r = client.get("/payment/failed", params={"session_id": "B-1"},
                       headers=OTHER)
        assert r.status_code == 404

        stock = client.get("/api/bundles/1/stock").json()
        assert stock["reserved"] == 1
        assert upstream.calls_to("bundle_cancel.php") == []

    def test_failure_return_needs_session(self, client, upstream):
        self._order(client, upstream)
        r = client.get("/payment/failed", params={"session_id": "B-1"})
        assert r.status_code == 401

    def test_pending_is_admin_only(self, client, upstream):
        self._order(client, upstream)
        assert client.get("/api/orders/pending").status_code == 403
        r = client.get("/api/orders/pending", headers=AUTH)
        assert r.status_code == 403
        r = client.get("/api/orders/pending",
                       headers={"X-Admin-Token": "wrong"})
        assert r.status_code == 403

    def test_unknown_stock(self, client):
        assert client.get("/api/bundles/5/stock").status_code == 404


class TestRewards:
    def test_votes(self, client, upstream):
        upstream.on("GET", "vote_sites.php", "list", json={
            "success": True,
            "sites": [{"id": 1, "name": "TopG", "url": "https://t.example",
                       "coins_reward": 50, "vip_reward": 5,
                       "cooldown_hours": 12}],
        })
        upstream.on("POST", "vote.php", "get_vote_status", json={
            "success": True, "coins": 10, "vip_points": 1,
            "total_votes": 1, "site_statuses": {"1": {
                "last_vote_time": "2024-05-01T10:00:00+00:00",
                "can_vote": False, "time_remaining": 5_400_000,
            }},
        })

        r = client.get("/api/votes", headers=AUTH).json()

        site = r["sites"][0]
        assert site["can_vote"] is False
        assert site["remaining"] in ("01:30:00", "01:29:59")
        assert r["pending"] == {"coins": 0, "vip": 0, "sites": 0}

        vote = client.post("/api/votes/1", headers=AUTH)
        assert vote.status_code == 200
        assert vote.json()["state"] == "too_early"

    def test_claim_twice(self, client, upstream):
        replies = iter([
            {"success": True, "achievement_name": "First Vote",
             "coins_earned": 100, "vip_earned": 10},
            {"success": False, "error": "Already claimed"},
        ])

        def claim(request):
            return httpx.Response(200, json=next(replies))

        upstream.on("POST", "achievements.php", "claim", handler=claim)

        first = client.post("/api/achievements/1/claim?character_id=3",
                            headers=AUTH)
        second = client.post("/api/achievements/1/claim?character_id=3",
                             headers=AUTH)

        assert first.json()["coins"] == 100
        assert second.status_code == 200
        assert second.json()["ok"] is False
        assert second.json()["state"] == "already_claimed"

    def test_progress_needs_character(self, client):
        r = client.get("/api/achievements/progress", headers=AUTH)
        assert r.status_code == 400

    def test_spin_refetches_status(self, client, upstream):
        upstream.on("POST", "spin_wheel.php", "spin", json={
            "success": True,
            "winner": {"label": "Nothing", "reward_type": "nothing",
                       "reward_value": 0},
            "winner_index": 0, "segment_count": 6, "reward_given": False,
            "spins_remaining": 0,
        })
        upstream.on("GET", "spin_wheel.php", "status", json={
            "success": True, "can_spin": False, "spins_used": 1,
            "spins_per_day": 1, "spins_remaining": 0, "enabled": True,
        })

        r = client.post("/api/spin", headers=AUTH, json={"role_id": 3})

        assert r.json()["reward_type"] == "nothing"
        assert r.json()["status"]["can_spin"] is False


class TestSession:
    def test_logout_clears_state(self, client):
        client.post("/api/session/character", headers=AUTH,
                    json={"id": 44, "name": "Aria"})
        assert client.post("/api/session/logout",
                           headers=AUTH).json() == {"ok": True}
        r = client.get("/api/achievements/progress", headers=AUTH)
        assert r.status_code == 400

    def test_timings(self, client, upstream):
        upstream.on("GET", "achievements.php", "list",
                    json={"success": True, "achievements": []})
        client.get("/api/achievements")
        kinds = [t["kind"] for t in client.get("/api/timings").json()[
            "timings"]]
        assert "gameapi.achievements" in kinds
        cleared = client.get("/api/timings", params={"reset": "true"})
        assert cleared.json()["timings"]
        assert client.get("/api/timings").json()["timings"] == []
