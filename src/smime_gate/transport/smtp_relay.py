"""Async SMTP client relaying processed mail to the downstream server.

One SMTPRelay instance carries one outbound session: the first send
(state NEW) connects, later sends (state NXT) reuse the connection.
"""

from typing import TYPE_CHECKING

import aiosmtplib
import structlog

from smime_gate.core import sanitize_for_log
from smime_gate.exceptions import TransportError
from smime_gate.models import MailObject, SessionState

if TYPE_CHECKING:
    from smime_gate.config import Settings

logger = structlog.get_logger(__name__)


class SMTPRelay:
    """Outbound SMTP session to the configured relay.

    Attributes:
        host: Relay hostname.
        port: Relay port.
        timeout: Socket timeout in seconds for every SMTP command.
    """

    def __init__(self, settings: "Settings") -> None:
        self.host = settings.relay_host
        self.port = settings.relay_port
        self.timeout = settings.relay_timeout
        self._client: aiosmtplib.SMTP | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def connect(self) -> None:
        """Open the relay connection.

        Raises:
            TransportError: If the relay cannot be reached or rejects the greeting.
        """
        logger.info("relay_connecting", host=self.host, port=self.port)
        client = aiosmtplib.SMTP(hostname=self.host, port=self.port, timeout=self.timeout)
        try:
            await client.connect()
        except (aiosmtplib.SMTPException, OSError) as e:
            logger.error("relay_connection_failed", host=self.host, error=str(e))
            raise TransportError(f"Relay connection failed: {e}") from e
        self._client = client
        logger.info("relay_connected", host=self.host)

    async def send(self, mail: MailObject, state: SessionState) -> bool:
        """Relay one mail using its envelope.

        A NEW state opens the session. A failed send is followed by RSET
        so the next mail can go out on the same connection.

        Returns:
            True when the relay accepted the mail, False otherwise. A
            recipient refused with a 4xx code makes the send count as
            failed; 5xx refusals are only logged.
        """
        if state == SessionState.NEW:
            await self.close()
            try:
                await self.connect()
            except TransportError:
                return False

        client = self._client
        if client is None or not client.is_connected:
            logger.warning("relay_not_connected", message_id=mail.message_id[:30])
            return False

        try:
            refused, response = await client.sendmail(
                mail.sender, mail.recipients, mail.raw
            )
        except aiosmtplib.SMTPServerDisconnected as e:
            logger.error("relay_connection_lost", error=str(e))
            self._client = None
            return False
        except aiosmtplib.SMTPException as e:
            logger.warning(
                "relay_send_rejected",
                message_id=mail.message_id[:30],
                sender=sanitize_for_log(mail.sender),
                error=str(e),
            )
            await self._reset()
            return False

        if refused:
            logger.warning(
                "relay_recipients_refused",
                message_id=mail.message_id[:30],
                refused=[sanitize_for_log(r) for r in refused],
            )
            # A deferred recipient has not got the mail yet; keep the spool file
            deferred = [r for r, (code, _) in refused.items() if 400 <= code < 500]
            if deferred:
                logger.warning(
                    "relay_recipients_deferred",
                    message_id=mail.message_id[:30],
                    deferred=[sanitize_for_log(r) for r in deferred],
                )
                return False
        logger.info("relay_accepted", message_id=mail.message_id[:30], response=response)
        return True

    async def _reset(self) -> None:
        if self._client is None or not self._client.is_connected:
            return
        try:
            await self._client.rset()
        except aiosmtplib.SMTPException as e:
            logger.warning("relay_reset_failed", error=str(e))

    async def close(self) -> None:
        """Close the relay session."""
        if self._client is None:
            return
        client, self._client = self._client, None
        if not client.is_connected:
            return
        try:
            await client.quit()
        except aiosmtplib.SMTPException:
            client.close()
        logger.info("relay_disconnected", host=self.host)
