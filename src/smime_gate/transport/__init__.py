"""Transport layer for smime-gate.

This module provides the session endpoints and local storage the
gateway core is written against:
- SMTPSessionTransport / GatewayHandler: inbound SMTP sessions via aiosmtpd
- SMTPRelay: outbound relay session via aiosmtplib
- SpoolStore: one file per buffered mail
"""

from smime_gate.transport.base import InboundTransport, OutboundTransport
from smime_gate.transport.smtp_relay import SMTPRelay
from smime_gate.transport.smtp_server import GatewayHandler, GatewaySMTP, SMTPSessionTransport
from smime_gate.transport.spool import SpoolStore

__all__ = [
    "GatewayHandler",
    "GatewaySMTP",
    "InboundTransport",
    "OutboundTransport",
    "SMTPRelay",
    "SMTPSessionTransport",
    "SpoolStore",
]
