import asyncio
import ssl
import threading
import uuid
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import List, Optional, Type

from imapclient import IMAPClient

from .config import ImapServerConfig
from .logging_setup import logger
from .metrics import MetricSink
from .registry import register_probe
from .session import (
    Outcome,
    ProbeAuthenticationError,
    ProbeClass,
    ProbeConnectionError,
    ProbeError,
    ProbeProtocolError,
    ProbeSession,
)

SUBJECT_PREFIX = "[MAILPROBE]"


class _Connection:
    """Connection state of one run.

    Worker threads hold a reference to the object of their own run, so a
    thread left behind by a cancelled round can never touch the client of a
    later round.
    """

    def __init__(self):
        self.client: Optional[IMAPClient] = None
        self.aborted = threading.Event()

    def shutdown(self) -> None:
        client, self.client = self.client, None
        if client is None:
            return
        try:
            client.shutdown()
        except Exception as e:
            logger.debug(f"IMAP shutdown error ignored: {e}")


@register_probe("imap")
class ImapSession(ProbeSession):
    """banner -> authentication -> append -> fetch -> expunge, via imapclient.

    imapclient is blocking, so each stage runs in a worker thread; the event
    loop only awaits it and can cancel the wait.
    """

    probe_class = ProbeClass.IMAP
    stages = ("banner", "authentication", "append", "fetch", "expunge")

    def __init__(self, server: ImapServerConfig, sink: MetricSink):
        super().__init__(server, sink)
        self._conn: Optional[_Connection] = None

    async def probe(self, outcome: Outcome, deadline: Optional[float]) -> None:
        conn = self._conn = _Connection()
        timeout = self.io_timeout(deadline, self.server.timeout_seconds)
        token = f"E2E-{uuid.uuid4().hex[:12]}"

        with self.stage(outcome, "banner", ProbeConnectionError):
            await asyncio.to_thread(self._open, conn, timeout)
        with self.stage(outcome, "authentication", ProbeAuthenticationError):
            await asyncio.to_thread(self._login, conn)
        with self.stage(outcome, "append"):
            await asyncio.to_thread(self._append, conn, token)
        with self.stage(outcome, "fetch"):
            count = await asyncio.to_thread(self._fetch_envelopes, conn)
        with self.stage(outcome, "expunge"):
            removed = await asyncio.to_thread(self._expunge, conn, token)
        logger.debug(f"[{self.name}] IMAP fetched {count} envelope(s), removed {removed} test message(s)")

    async def close(self) -> None:
        conn = self._conn
        if conn is not None and conn.client is not None:
            await asyncio.to_thread(self._logout, conn)
        self._conn = None

    def classify(self, exc: Exception, default: Type[ProbeError]) -> Type[ProbeError]:
        # socket and TLS failures, including timeouts; imaplib errors are not OSError
        if isinstance(exc, OSError):
            return ProbeConnectionError
        return default

    def abort(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        conn.aborted.set()
        conn.shutdown()

    # ---------- blocking helpers (worker threads) ----------

    def _ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        ctx.minimum_version = ssl.TLSVersion.TLSv1_2
        if not self.server.verify_tls:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    def _connect(self, timeout: float) -> IMAPClient:
        host, port = self.server.host, self.server.port
        if self.server.tls != "never":
            try:
                return IMAPClient(host, port=port, ssl=True, ssl_context=self._ssl_context(), timeout=timeout)
            except OSError as e:
                if self.server.tls == "always":
                    raise
                logger.debug(f"[{self.name}] IMAP TLS connect to {host}:{port} failed ({e}); retrying plaintext")
        return IMAPClient(host, port=port, ssl=False, timeout=timeout)

    def _open(self, conn: _Connection, timeout: float) -> None:
        conn.client = self._connect(timeout)
        # the round may have been cancelled while we were connecting
        if conn.aborted.is_set():
            conn.shutdown()
            raise ProbeConnectionError("session aborted while connecting")

    def _client(self, conn: _Connection) -> IMAPClient:
        if conn.client is None:
            raise ProbeProtocolError("no active connection")
        return conn.client

    def _login(self, conn: _Connection) -> None:
        self._client(conn).login(self.server.username, self.server.password)

    def _append(self, conn: _Connection, token: str) -> None:
        msg = EmailMessage()
        msg["From"] = "mailprobe@example.org"
        msg["To"] = self.server.username
        msg["Subject"] = f"{SUBJECT_PREFIX} {token}"
        msg.set_content(f"Mail probe test message token={token}\r\n")
        self._client(conn).append(
            self.server.mailbox,
            msg.as_bytes(),
            flags=(),
            msg_time=datetime.now(timezone.utc),
        )

    def _fetch_envelopes(self, conn: _Connection) -> int:
        client = self._client(conn)
        info = client.select_folder(self.server.mailbox)
        exists = int(info.get(b"EXISTS", 0) or 0)
        if exists == 0:
            logger.info(f"[{self.name}] No messages in {self.server.mailbox}")
            return 0
        messages = client.fetch("1:*", ["ENVELOPE"])
        return len(messages)

    def _expunge(self, conn: _Connection, token: str) -> int:
        client = self._client(conn)
        uids: List[int] = client.search(["SUBJECT", token])
        if not uids:
            raise ProbeProtocolError(f"appended test message {token} not found in {self.server.mailbox}")
        client.delete_messages(uids)
        client.expunge()
        return len(uids)

    def _logout(self, conn: _Connection) -> None:
        client = conn.client
        if client is None:
            return
        try:
            client.logout()
            conn.client = None
        except Exception as e:
            logger.debug(f"[{self.name}] IMAP logout failed, closing socket: {e}")
            conn.shutdown()
