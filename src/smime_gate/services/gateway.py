"""Gateway service: one intake/transform/forward run per inbound session."""

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from smime_gate.exceptions import SessionAbortedError
from smime_gate.models import SessionReport
from smime_gate.policy import Policy, RuleEngine
from smime_gate.services.forwarder import Forwarder
from smime_gate.services.intake import fill_batch
from smime_gate.services.transform import TransformAdapter, TransformPipeline
from smime_gate.tool import SmimeTool, SmimeToolRunner
from smime_gate.transport import GatewayHandler, GatewaySMTP, SMTPRelay, SpoolStore
from smime_gate.transport.base import InboundTransport, OutboundTransport

if TYPE_CHECKING:
    from smime_gate.config import Settings

logger = structlog.get_logger(__name__)

# How long shutdown waits for in-flight sessions to finish forwarding
SHUTDOWN_GRACE_SECONDS = 60


class SmimeGate:
    """Store-and-forward S/MIME gateway.

    Every inbound session fills its own batch, runs the transform
    pipeline over it and forwards it over its own relay session. The
    policy is shared read-only between sessions.
    """

    def __init__(
        self,
        settings: "Settings",
        policy: Policy,
        tool: SmimeTool | None = None,
        relay_factory: Callable[[], OutboundTransport] | None = None,
    ):
        self.settings = settings
        self.capacity = settings.batch_capacity
        self.store = SpoolStore(settings)
        self.engine = RuleEngine(policy)
        self.pipeline = TransformPipeline(
            self.engine, TransformAdapter(tool or SmimeToolRunner(settings), self.store)
        )
        self.forwarder = Forwarder(self.store)
        self.relay_factory = relay_factory or (lambda: SMTPRelay(settings))
        self._shutdown = asyncio.Event()

    async def serve_session(self, transport: InboundTransport) -> SessionReport:
        """Buffer, transform and forward the mails of one inbound session.

        A session that ends with no mails is a no-op: no relay connection
        is opened. A session whose client disconnected is abandoned; its
        spool files stay on disk.
        """
        report = SessionReport()
        try:
            batch = await fill_batch(transport, self.store, self.capacity)
        except SessionAbortedError as e:
            logger.warning("session_aborted", error=str(e))
            report.aborted = True
            return report

        report.received = len(batch)
        if not batch:
            logger.info("session_empty")
            return report

        report.transforms = await self.pipeline.process(batch)
        report.forwarded = await self.forwarder.forward(batch, self.relay_factory())

        logger.info(
            "session_complete",
            received=report.received,
            delivered=report.delivered_count,
            failed=report.failed_count,
        )
        return report

    async def run(self) -> None:
        """Listen for SMTP clients until shutdown is requested."""
        await self.store.ensure_directories()

        handler = GatewayHandler(self.store, self.serve_session)
        loop = asyncio.get_running_loop()
        server = await loop.create_server(
            lambda: GatewaySMTP(handler, data_size_limit=self.settings.data_size_limit),
            host=self.settings.listen_host,
            port=self.settings.listen_port,
        )
        logger.info(
            "gateway_listening",
            host=self.settings.listen_host,
            port=self.settings.listen_port,
            relay=f"{self.settings.relay_host}:{self.settings.relay_port}",
            capacity=self.capacity,
        )

        try:
            await self._shutdown.wait()
        finally:
            server.close()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(handler.wait_closed(), timeout=SHUTDOWN_GRACE_SECONDS)
            logger.info("gateway_stopped", pending=await self.store.count_pending())

    def request_shutdown(self) -> None:
        """Signal graceful shutdown."""
        logger.info("shutdown_requested")
        self._shutdown.set()
