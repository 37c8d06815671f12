"""Async runner for the ``smime-tool`` command-line program."""

import asyncio
import subprocess
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from smime_gate.core import sanitize_for_log
from smime_gate.exceptions import ToolInvocationError, ToolTimeoutError
from smime_gate.models import Action
from smime_gate.policy.rules import DecryptRule, EncryptRule, SignRule, VerifyRule

if TYPE_CHECKING:
    from smime_gate.config import Settings

logger = structlog.get_logger(__name__)


class SmimeToolRunner:
    """Run ``smime-tool`` as a subprocess, one invocation per transform.

    The command line is built as an argument vector and never passed
    through a shell. Standard output goes straight to the byproduct file.
    Passphrases are part of the argument vector, so the vector itself is
    never logged.

    Attributes:
        tool_path: Executable name or path of the tool.
        timeout: Seconds an invocation may run before it is killed.
    """

    def __init__(self, settings: "Settings") -> None:
        self.tool_path = settings.tool_path
        self.timeout = settings.tool_timeout

    async def sign(self, rule: SignRule, source: Path, output: Path) -> int:
        args = [
            "-cert", rule.cert_path,
            "-key", rule.key_path,
            "-pass", rule.passphrase.get_secret_value(),
        ]  # fmt: skip
        return await self._run(Action.SIGN, args, source, output)

    async def encrypt(self, rule: EncryptRule, source: Path, output: Path) -> int:
        return await self._run(Action.ENCRYPT, ["-cert", rule.cert_path], source, output)

    async def decrypt(self, rule: DecryptRule, source: Path, output: Path) -> int:
        args = [
            "-cert", rule.cert_path,
            "-key", rule.key_path,
            "-pass", rule.passphrase.get_secret_value(),
        ]  # fmt: skip
        return await self._run(Action.DECRYPT, args, source, output)

    async def verify(self, rule: VerifyRule, source: Path, output: Path) -> int:
        args = ["-cert", rule.cert_path, "-ca", rule.ca_cert_path]
        return await self._run(Action.VERIFY, args, source, output)

    async def _run(self, action: Action, args: list[str], source: Path, output: Path) -> int:
        """Invoke the tool and wait for it, killing it on timeout.

        Returns:
            The tool's exit status.

        Raises:
            ToolInvocationError: If the process could not be started.
            ToolTimeoutError: If the process ran longer than ``timeout``.
        """
        argv = [self.tool_path, f"-{action.value}", *args, str(source)]
        logger.debug("tool_invoking", action=action.value, source=source.name)

        try:
            with open(output, "wb") as out:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.PIPE,
                )
        except OSError as e:
            logger.error("tool_launch_failed", action=action.value, error=str(e))
            raise ToolInvocationError(f"Cannot run {self.tool_path}: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("tool_timeout", action=action.value, timeout=self.timeout)
            raise ToolTimeoutError(
                f"{self.tool_path} -{action.value} exceeded {self.timeout}s",
                timeout=self.timeout,
            ) from None

        returncode = proc.returncode if proc.returncode is not None else -1
        if returncode != 0:
            logger.warning(
                "tool_failed",
                action=action.value,
                returncode=returncode,
                stderr=sanitize_for_log(stderr.decode("utf-8", errors="replace"), 200),
            )
        return returncode
