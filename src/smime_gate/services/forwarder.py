"""Relay a processed batch to the downstream server."""

import structlog

from smime_gate.models import Batch, ForwardOutcome, SessionState
from smime_gate.transport.base import OutboundTransport
from smime_gate.transport.spool import SpoolStore

logger = structlog.get_logger(__name__)


class Forwarder:
    """Send every mail of a batch over one outbound session.

    Mails go out in receive order. A spool file is deleted only after the
    relay accepted its mail; a rejected mail keeps its file and the loop
    moves on to the next one. Nothing is retried within a run.
    """

    def __init__(self, store: SpoolStore) -> None:
        self.store = store

    async def forward(self, batch: Batch, relay: OutboundTransport) -> list[ForwardOutcome]:
        outcomes: list[ForwardOutcome] = []
        state = SessionState.NEW

        try:
            for record in batch:
                mail = record.mail
                if record.stale:
                    logger.error("forward_skipped_stale", filename=record.path.name)
                    outcomes.append(
                        ForwardOutcome(
                            path=record.path,
                            message_id=mail.message_id,
                            delivered=False,
                            error="spool file could not be reloaded",
                        )
                    )
                    continue

                try:
                    delivered = await relay.send(mail, state)
                    error = None if delivered else "relay did not accept the mail"
                except Exception as e:
                    # One mail's failure must not stop the rest of the batch
                    logger.error("forward_error", filename=record.path.name, error=str(e))
                    delivered, error = False, str(e)
                state = SessionState.NXT

                if delivered:
                    await self.store.remove(record.path)
                    logger.info("mail_forwarded", filename=record.path.name)
                else:
                    logger.warning("mail_forward_failed", filename=record.path.name)

                outcomes.append(
                    ForwardOutcome(
                        path=record.path,
                        message_id=mail.message_id,
                        delivered=delivered,
                        error=error,
                    )
                )
        finally:
            await relay.close()

        delivered_count = sum(1 for o in outcomes if o.delivered)
        logger.info(
            "batch_forwarded",
            delivered=delivered_count,
            failed=len(outcomes) - delivered_count,
        )
        return outcomes
