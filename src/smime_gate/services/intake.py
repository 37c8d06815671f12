"""Intake loop buffering the mails of one inbound session."""

from pathlib import Path

import structlog

from smime_gate.exceptions import AllocationError, TransportError
from smime_gate.models import Batch, PersistedMail, SessionState
from smime_gate.transport.base import InboundTransport
from smime_gate.transport.spool import SpoolStore

logger = structlog.get_logger(__name__)


async def fill_batch(transport: InboundTransport, store: SpoolStore, capacity: int) -> Batch:
    """Receive mails from ``transport`` until the session ends or the batch is full.

    The state passed to the transport is NEW for the first call and NXT
    after every successful receive. Once the batch holds ``capacity``
    mails, or the spool slot for the next mail could not be reserved,
    the next call carries ERR so the transport closes the session.

    Args:
        transport: The inbound session to read from.
        store: Spool providing one file per received mail.
        capacity: Maximum number of mails buffered for this session.

    Returns:
        The filled batch, possibly empty.

    Raises:
        SessionAbortedError: If the client disconnected. Mails already
            spooled are left on disk and are not forwarded.
        TransportError: If the transport returned a mail while no spool
            slot was reserved for it.
    """
    batch = Batch(capacity=capacity)
    state = SessionState.NEW
    path = await _reserve(store)
    if path is None:
        state = SessionState.ERR

    try:
        while True:
            mail = await transport.receive(state, path)
            if mail is None:
                break
            if path is None:
                raise TransportError("Transport returned a mail without a spool slot")
            batch.append(PersistedMail(mail=mail, path=path))

            if batch.full:
                logger.info("batch_full", capacity=capacity)
                path, state = None, SessionState.ERR
                continue

            path = await _reserve(store)
            state = SessionState.NXT if path is not None else SessionState.ERR
    finally:
        # The slot reserved for the next mail was never filled
        if path is not None:
            await store.release(path)

    logger.info("intake_complete", received=len(batch), capacity=capacity)
    return batch


async def _reserve(store: SpoolStore) -> Path | None:
    try:
        return await store.allocate()
    except AllocationError as e:
        logger.error("intake_slot_unavailable", error=str(e))
        return None
