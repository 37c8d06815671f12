"""Capability interface for the external S/MIME tool."""

from pathlib import Path
from typing import Protocol

from smime_gate.policy.rules import DecryptRule, EncryptRule, SignRule, VerifyRule


class SmimeTool(Protocol):
    """The four S/MIME operations the gateway can apply to a spooled mail.

    Each operation reads ``source`` and writes its result to ``output``,
    returning the tool's exit status (0 means success). Implementations
    raise ToolInvocationError when the tool cannot be run at all and
    ToolTimeoutError when it had to be killed.
    """

    async def sign(self, rule: SignRule, source: Path, output: Path) -> int: ...

    async def encrypt(self, rule: EncryptRule, source: Path, output: Path) -> int: ...

    async def decrypt(self, rule: DecryptRule, source: Path, output: Path) -> int: ...

    async def verify(self, rule: VerifyRule, source: Path, output: Path) -> int: ...
