"""Three-state send/receive primitives the gateway core is written against."""

from pathlib import Path
from typing import Protocol

from smime_gate.models import MailObject, SessionState


class InboundTransport(Protocol):
    async def receive(self, state: SessionState, path: Path | None) -> MailObject | None:
        """Receive the next mail of the session and persist it at ``path``.

        ``state`` is NEW for the first call, NXT afterwards, and ERR when
        the caller can take no more mails; on ERR the transport refuses
        further mails from the client and returns None.

        Returns:
            The received mail, or None at end of session or on failure.

        Raises:
            SessionAbortedError: If the client went away mid-session.
        """
        ...


class OutboundTransport(Protocol):
    async def send(self, mail: MailObject, state: SessionState) -> bool:
        """Send one mail; NEW opens the session, NXT reuses it.

        Returns:
            True only when the server accepted the mail.
        """
        ...

    async def close(self) -> None: ...
