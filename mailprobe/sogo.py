from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from .registry import register_probe
from .session import ProbeAuthenticationError, ProbeProtocolError
from .webmail import WebmailSession, expect_ok

XSRF_COOKIE = "XSRF-TOKEN"


def first_uid(listing: Dict[str, Any]) -> Optional[Any]:
    """First message uid of a SOGo folder view; threaded views nest uids in lists."""
    uids = listing.get("uids") or []
    while isinstance(uids, list):
        if not uids:
            return None
        uids = uids[0]
    return uids


@register_probe("sogo")
class SogoSession(WebmailSession):
    landing_path = "/SOGo/"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._headers: Dict[str, str] = {}

    @property
    def _folder(self) -> str:
        return f"/SOGo/so/{quote(self.server.username)}/Mail/0/folderINBOX"

    async def login(self, client: httpx.AsyncClient, landing_page: str) -> None:
        resp = await client.post(
            "/SOGo/connect",
            json={"userName": self.server.username, "password": self.server.password, "rememberLogin": 0},
        )
        expect_ok(resp, "login", auth=True)
        xsrf = client.cookies.get(XSRF_COOKIE)
        if not xsrf:
            raise ProbeAuthenticationError(f"login rejected: no {XSRF_COOKIE} cookie issued")
        self._headers = {"X-XSRF-TOKEN": xsrf}

    async def list_messages(self, client: httpx.AsyncClient) -> Optional[Any]:
        resp = await client.post(
            f"{self._folder}/view",
            json={"sortingAttributes": {"sort": "arrival", "asc": 0}},
            headers=self._headers,
        )
        expect_ok(resp, "listing")
        try:
            listing = resp.json()
        except ValueError as e:
            raise ProbeProtocolError(f"listing returned invalid JSON: {e}") from e
        if not isinstance(listing, dict):
            raise ProbeProtocolError("listing returned an unexpected document")
        return first_uid(listing)

    async def load_message(self, client: httpx.AsyncClient, uid: Any) -> None:
        resp = await client.get(f"{self._folder}/{uid}/view", headers=self._headers)
        expect_ok(resp, "message load")
