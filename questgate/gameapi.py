"""
Thin async client for the remote account/game API.

Every method returns the decoded JSON body. Network failures and non-2xx
replies become TransportError; a reply that isn't JSON at all is an
IntegrationDefect. Deciding what a `success: false` body means is left to the
callers, they know which rejections are domain-level.
"""
from __future__ import annotations
import time
from typing import Any, Dict, Iterable, Optional

import httpx

from .errors import IntegrationDefect, TransportError
from .infra.timings import timeit
from .logs import get_logger
from .session import SessionContext

log = get_logger(__name__)


def _rid() -> str:
    # cache buster, the PHP side sends no cache headers
    return str(int(time.time() * 1000))


class GameApiClient:
    def __init__(self, http: httpx.AsyncClient, base_url: str) -> None:
        self.http = http
        self.base = base_url.rstrip("/")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        session: Optional[SessionContext] = None,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        ok_statuses: Iterable[int] = (),
    ) -> Dict[str, Any]:
        url = f"{self.base}/{path.lstrip('/')}"
        state_changing = method.upper() != "GET"
        if session is not None:
            headers = session.auth_headers(state_changing=state_changing)
        else:
            headers = {"Accept": "application/json"}

        async with timeit(f"gameapi.{path.split('.')[0]}"):
            try:
                resp = await self.http.request(
                    method, url, params=params, json=json, data=data,
                    headers=headers,
                )
            except httpx.HTTPError as e:
                log.warning("gameapi_transport_failed", path=path,
                            error=str(e))
                raise TransportError(f"{path}: {e}") from e

        try:
            body = self._decode(resp, path)
        except IntegrationDefect as e:
            log.error("integration_defect", path=path, reason=e.message)
            raise
        if resp.is_success or resp.status_code in ok_statuses:
            return body

        message = (
            body.get("message") or body.get("error") or resp.reason_phrase
        )
        raise TransportError(
            f"{path}: HTTP {resp.status_code}: {message}",
            status_code=resp.status_code,
            upstream_message=message,
        )

    @staticmethod
    def _decode(resp: httpx.Response, path: str) -> Dict[str, Any]:
        ctype = resp.headers.get("content-type", "")
        if "json" not in ctype:
            if not resp.is_success:
                # proxies and 5xx pages come back as HTML
                return {}
            raise IntegrationDefect(
                f"{path}: non-JSON response: {resp.text[:100]}"
            )
        try:
            body = resp.json()
        except ValueError as e:
            raise IntegrationDefect(f"{path}: invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise IntegrationDefect(f"{path}: expected a JSON object")
        return body

    # ---- purchase flows ---------------------------------------------------
    async def create_webshop_order(
        self, session: SessionContext, body: Dict[str, Any]
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "paypal_create_card_order.php", session=session,
            params={"sessionToken": session.token},
            json={**body, "sessionToken": session.token},
        )

    async def list_bundles(self) -> Dict[str, Any]:
        return await self._request(
            "GET", "bundles.php", params={"action": "list", "rid": _rid()}
        )

    async def purchase_bundle(
        self, session: SessionContext, bundle_id: int, character_id: int,
        character_name: str,
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "bundles.php", session=session,
            json={
                "action": "purchase",
                "bundle_id": bundle_id,
                "character_id": character_id,
                "character_name": character_name,
            },
        )

    async def cancel_bundle_order(self, order_id: str) -> Dict[str, Any]:
        return await self._request(
            "POST", "bundle_cancel.php", json={"paypalOrderId": order_id}
        )

    async def purchase_gamepass(
        self, session: SessionContext, tier: str, upgrade: bool
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "gamepass_purchase.php", session=session,
            params={"sessionToken": session.token},
            json={"tier": tier, "upgrade": upgrade,
                  "sessionToken": session.token},
        )

    async def extend_gamepass(
        self, session: SessionContext, tier: str, days: int
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "gamepass_extend.php", session=session,
            params={"sessionToken": session.token},
            json={"tier": tier, "days": days, "sessionToken": session.token},
        )

    # ---- votes ------------------------------------------------------------
    async def list_vote_sites(self) -> Dict[str, Any]:
        return await self._request(
            "GET", "vote_sites.php", params={"action": "list", "rid": _rid()}
        )

    async def vote_status(self, session: SessionContext) -> Dict[str, Any]:
        return await self._request(
            "POST", "vote.php", session=session, params={"rid": _rid()},
            data={
                "action": "get_vote_status",
                "username": session.username,
                "fingerprint": session.fingerprint,
            },
        )

    async def submit_vote(
        self, session: SessionContext, site_id: int
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "vote.php", session=session, params={"rid": _rid()},
            data={
                "action": "submit_vote",
                "username": session.username,
                "fingerprint": session.fingerprint,
                "site_id": str(site_id),
            },
        )

    # ---- achievements -----------------------------------------------------
    async def list_achievements(self) -> Dict[str, Any]:
        return await self._request(
            "GET", "achievements.php", params={"action": "list"}
        )

    async def achievement_progress(
        self, session: SessionContext, character_id: int
    ) -> Dict[str, Any]:
        return await self._request(
            "GET", "achievements.php", session=session,
            params={"action": "user_progress", "character_id": character_id},
        )

    async def check_achievement_unlocks(
        self, session: SessionContext, character_id: int
    ) -> Dict[str, Any]:
        return await self._request(
            "GET", "achievements.php", session=session,
            params={"action": "check_unlocks", "character_id": character_id},
        )

    async def claim_achievement(
        self, session: SessionContext, achievement_id: int, character_id: int
    ) -> Dict[str, Any]:
        return await self._request(
            "POST", "achievements.php", session=session,
            params={"action": "claim"},
            json={"achievement_id": achievement_id,
                  "character_id": character_id},
        )

    # ---- chance wheel -----------------------------------------------------
    async def spin_status(self, session: SessionContext) -> Dict[str, Any]:
        return await self._request(
            "GET", "spin_wheel.php", session=session,
            params={"action": "status"},
        )

    async def spin(
        self, session: SessionContext, role_id: int
    ) -> Dict[str, Any]:
        # 403 (disabled) and 429 (no spins left) carry a useful body
        return await self._request(
            "POST", "spin_wheel.php", session=session,
            params={"action": "spin"}, json={"role_id": role_id},
            ok_statuses=(403, 429),
        )

    async def spin_segments(self) -> Dict[str, Any]:
        return await self._request(
            "GET", "spin_wheel.php", params={"action": "segments"}
        )
