"""Inbound SMTP listener built on aiosmtpd.

Each client connection gets its own SMTPSessionTransport. The aiosmtpd
handler hands every DATA payload to that transport and waits for the
intake loop to persist it before answering the client, so a 250 reply
always means the mail is on disk.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
from aiosmtpd.smtp import SMTP, Envelope, Session

from smime_gate.core import sanitize_for_log
from smime_gate.exceptions import SessionAbortedError, SpoolError
from smime_gate.models import MailObject, SessionState
from smime_gate.transport.spool import SpoolStore

logger = structlog.get_logger(__name__)

REPLY_ACCEPTED = "250 2.0.0 OK: queued"
REPLY_TEMPFAIL = "451 4.3.0 Temporary failure, mail not queued"
REPLY_BUSY = "421 4.3.2 Session mail limit reached, closing connection"

# Queue markers for the end of a session
_END = "end"
_ABORT = "abort"


@dataclass
class _Offer:
    sender: str
    recipients: list[str]
    content: bytes
    reply: "asyncio.Future[str]" = field(repr=False)


class SMTPSessionTransport:
    """Inbound transport for one client connection.

    The aiosmtpd handler pushes mails in with ``offer()``; the intake
    loop pulls them out with ``receive()``.
    """

    def __init__(self, store: SpoolStore, peer: str = "unknown") -> None:
        self.store = store
        self.peer = peer
        self._queue: asyncio.Queue[_Offer | str] = asyncio.Queue()
        self._refusing = False

    @property
    def refusing(self) -> bool:
        return self._refusing

    async def offer(self, sender: str, recipients: list[str], content: bytes) -> str:
        """Queue a mail from the client and wait for the intake verdict.

        Returns:
            The SMTP reply line for the DATA command.
        """
        if self._refusing:
            return REPLY_BUSY
        reply: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        await self._queue.put(_Offer(sender, recipients, content, reply))
        return await reply

    def end(self) -> None:
        """Mark the orderly end of the session (client sent QUIT)."""
        self._queue.put_nowait(_END)

    def abort(self) -> None:
        """Mark that the client connection was lost."""
        self._queue.put_nowait(_ABORT)

    async def receive(self, state: SessionState, path: Path | None) -> MailObject | None:
        if state == SessionState.ERR or path is None:
            logger.info("session_refusing_mail", peer=self.peer, state=state.value)
            self._refuse()
            return None

        item = await self._queue.get()
        if not isinstance(item, _Offer):
            self._refuse()
            if item == _ABORT:
                raise SessionAbortedError(f"Client {self.peer} disconnected mid-session")
            return None

        try:
            await self.store.write(path, item.content)
        except SpoolError as e:
            logger.error("session_spool_failed", peer=self.peer, error=str(e))
            self._resolve(item, REPLY_TEMPFAIL)
            self._refuse()
            return None

        mail = MailObject.parse(item.content, item.sender, item.recipients)
        self._resolve(item, REPLY_ACCEPTED)
        logger.info(
            "mail_received",
            peer=self.peer,
            filename=path.name,
            sender=sanitize_for_log(mail.sender),
            recipients=mail.recipient_count,
            size=len(item.content),
        )
        return mail

    @staticmethod
    def _resolve(offer: _Offer, reply: str) -> None:
        if not offer.reply.done():
            offer.reply.set_result(reply)

    def _refuse(self) -> None:
        """Stop taking mail and answer anything still waiting."""
        self._refusing = True
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if isinstance(item, _Offer):
                self._resolve(item, REPLY_BUSY)


SessionRunner = Callable[[SMTPSessionTransport], Awaitable[Any]]


class GatewayHandler:
    """aiosmtpd handler routing each connection to its own session task."""

    def __init__(self, store: SpoolStore, run_session: SessionRunner) -> None:
        self.store = store
        self.run_session = run_session
        self._sessions: dict[int, SMTPSessionTransport] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    def _transport_for(self, session: Session) -> SMTPSessionTransport:
        key = id(session)
        transport = self._sessions.get(key)
        if transport is None:
            peer = str(session.peer[0]) if session.peer else "unknown"
            transport = SMTPSessionTransport(self.store, peer)
            self._sessions[key] = transport
            task = asyncio.create_task(self._run(transport))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return transport

    async def _run(self, transport: SMTPSessionTransport) -> None:
        try:
            await self.run_session(transport)
        except Exception as e:
            logger.error("session_crashed", peer=transport.peer, error=str(e))

    async def handle_DATA(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        transport = self._transport_for(session)
        content = envelope.content or b""
        if isinstance(content, str):
            content = content.encode("utf-8")
        reply = await transport.offer(envelope.mail_from or "", list(envelope.rcpt_tos), content)
        if reply == REPLY_BUSY and server.transport is not None:
            # 421 means the server closes the connection once the reply is out
            asyncio.get_running_loop().call_soon(server.transport.close)
        return reply

    async def handle_QUIT(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        transport = self._sessions.get(id(session))
        if transport is not None:
            transport.end()
        return "221 Bye"

    def connection_lost(self, session: Session) -> None:
        # The connection, not the session task, owns the entry
        transport = self._sessions.pop(id(session), None)
        if transport is not None:
            transport.abort()

    async def wait_closed(self) -> None:
        """Wait for every running session to finish forwarding."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class GatewaySMTP(SMTP):
    """aiosmtpd protocol that tells the handler when a client drops."""

    def connection_lost(self, error: Exception | None) -> None:
        session = self.session
        super().connection_lost(error)
        if session is not None and isinstance(self.event_handler, GatewayHandler):
            self.event_handler.connection_lost(session)
