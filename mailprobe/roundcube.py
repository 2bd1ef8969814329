import re
from typing import Optional

import httpx

from .registry import register_probe
from .session import ProbeAuthenticationError, ProbeProtocolError
from .webmail import WebmailSession, expect_ok

_REQUEST_TOKEN = re.compile(r'"request_token"\s*:\s*"([^"]+)"')
_MESSAGE_ROW = re.compile(r"add_message_row\((\d+)")

SESSION_COOKIE = "roundcube_sessauth"


def extract_request_token(page: str) -> Optional[str]:
    match = _REQUEST_TOKEN.search(page)
    return match.group(1) if match else None


@register_probe("roundcube")
class RoundcubeSession(WebmailSession):
    landing_path = "/?_task=login"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._token: Optional[str] = None

    async def login(self, client: httpx.AsyncClient, landing_page: str) -> None:
        token = extract_request_token(landing_page)
        if not token:
            raise ProbeProtocolError("login page has no request_token")

        resp = await client.post(
            "/?_task=login",
            data={
                "_token": token,
                "_task": "login",
                "_action": "login",
                "_timezone": "UTC",
                "_url": "",
                "_user": self.server.username,
                "_pass": self.server.password,
            },
        )
        expect_ok(resp, "login", auth=True)
        if not client.cookies.get(SESSION_COOKIE):
            raise ProbeAuthenticationError("login rejected: no session cookie issued")

        # the mail view carries the token for the authenticated session
        mail = expect_ok(await client.get("/", params={"_task": "mail", "_mbox": "INBOX"}), "mail view")
        self._token = extract_request_token(mail.text) or token

    async def list_messages(self, client: httpx.AsyncClient) -> Optional[str]:
        resp = await client.get(
            "/",
            params={"_task": "mail", "_action": "list", "_mbox": "INBOX", "_page": "1", "_remote": "1"},
            headers={"X-Roundcube-Request": self._token or ""},
        )
        expect_ok(resp, "listing")
        match = _MESSAGE_ROW.search(resp.text)
        return match.group(1) if match else None

    async def load_message(self, client: httpx.AsyncClient, uid: str) -> None:
        resp = await client.get(
            "/",
            params={"_task": "mail", "_action": "preview", "_uid": uid, "_mbox": "INBOX", "_framed": "1"},
            headers={"X-Roundcube-Request": self._token or ""},
        )
        expect_ok(resp, "message load")
