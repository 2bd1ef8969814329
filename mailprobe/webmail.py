import asyncio
from typing import Any, Optional, Type

import httpx

from .config import WebmailServerConfig
from .logging_setup import logger
from .metrics import MetricSink
from .session import (
    Outcome,
    ProbeAuthenticationError,
    ProbeClass,
    ProbeConnectionError,
    ProbeError,
    ProbeProtocolError,
    ProbeSession,
)


def expect_ok(response: httpx.Response, what: str, auth: bool = False) -> httpx.Response:
    """Raise the matching probe error for a non-2xx/3xx response.

    With ``auth`` set, 401 and 403 are reported as authentication errors.
    """
    if auth and response.status_code in (401, 403):
        raise ProbeAuthenticationError(f"{what} failed with status {response.status_code}")
    if response.status_code >= 400:
        raise ProbeProtocolError(f"{what} failed with status {response.status_code}: {response.text[:200]}")
    return response


class WebmailSession(ProbeSession):
    """ttfb -> login -> listing -> loading over one ``httpx.AsyncClient``.

    The client (and with it the cookie jar) is created at the start of each
    run and closed at the end, so nothing survives between rounds.
    Subclasses implement :meth:`login`, :meth:`list_messages` and
    :meth:`load_message` for their webmail flavour.
    """

    probe_class = ProbeClass.WEBMAIL
    stages = ("ttfb", "login", "listing", "loading")
    landing_path = "/"

    def __init__(self, server: WebmailServerConfig, sink: MetricSink, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(server, sink)
        self.transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._closing: Optional["asyncio.Task[None]"] = None

    def new_client(self, timeout: float) -> httpx.AsyncClient:
        headers = {"User-Agent": self.server.user_agent} if self.server.user_agent else {}
        return httpx.AsyncClient(
            base_url=self.server.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
            transport=self.transport,
        )

    async def probe(self, outcome: Outcome, deadline: Optional[float]) -> None:
        client = self._client = self.new_client(self.io_timeout(deadline, self.server.timeout_seconds))

        with self.stage(outcome, "ttfb", ProbeConnectionError):
            landing = await client.send(client.build_request("GET", self.landing_path), stream=True)
            if landing.status_code >= 400:
                await landing.aclose()
                raise ProbeConnectionError(f"landing page returned status {landing.status_code}")
        with self.stage(outcome, "login", ProbeAuthenticationError):
            try:
                page = await landing.aread()
            finally:
                await landing.aclose()
            await self.login(client, page.decode("utf-8", errors="replace"))
        with self.stage(outcome, "listing"):
            uid = await self.list_messages(client)
        with self.stage(outcome, "loading"):
            if uid is None:
                raise ProbeProtocolError("message list is empty; nothing to load")
            await self.load_message(client, uid)
        logger.debug(f"[{self.name}] webmail loaded message uid={uid}")

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    def abort(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            self._closing = asyncio.get_running_loop().create_task(client.aclose())

    def classify(self, exc: Exception, default: Type[ProbeError]) -> Type[ProbeError]:
        if isinstance(exc, httpx.TransportError):
            return ProbeConnectionError
        return default

    # ---------- flavour hooks ----------

    async def login(self, client: httpx.AsyncClient, landing_page: str) -> None:
        raise NotImplementedError

    async def list_messages(self, client: httpx.AsyncClient) -> Optional[Any]:
        """Return the id of one message to open, or ``None`` for an empty list."""
        raise NotImplementedError

    async def load_message(self, client: httpx.AsyncClient, uid: Any) -> None:
        raise NotImplementedError
