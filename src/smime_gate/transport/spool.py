"""Spool directory holding one file per buffered mail."""

import hashlib
import os
import socket
import time
from pathlib import Path
from typing import TYPE_CHECKING

import aiofiles
import aiofiles.os
import structlog

from smime_gate.exceptions import AllocationError, PersistReplaceError, SpoolError
from smime_gate.models import MailObject

if TYPE_CHECKING:
    from smime_gate.config import Settings

logger = structlog.get_logger(__name__)

MAIL_SUFFIX = ".mail"
BYPRODUCT_SUFFIX = ".prcs"


class SpoolStore:
    """Manage spool files: reserve, write, load, replace, remove.

    A spool file is only ever deleted after its mail was accepted by the
    relay, or when it was reserved and never filled.
    """

    def __init__(self, settings: "Settings"):
        self.spool_dir = Path(settings.spool_dir)

    async def ensure_directories(self) -> None:
        """Create the spool directory."""
        await aiofiles.os.makedirs(self.spool_dir, exist_ok=True)
        logger.info("spool_directory_ensured", path=str(self.spool_dir))

    def _generate_filename(self) -> str:
        """Generate unique Maildir-style filename."""
        timestamp = int(time.time() * 1000000)
        hostname = socket.gethostname()[:16]
        random_part = hashlib.md5(
            f"{timestamp}{os.getpid()}{os.urandom(8).hex()}".encode()
        ).hexdigest()[:16]
        return f"{timestamp}.{random_part}.{hostname}{MAIL_SUFFIX}"

    @staticmethod
    def byproduct_path(path: Path) -> Path:
        """Where a transform of ``path`` writes its output."""
        return path.with_name(path.name + BYPRODUCT_SUFFIX)

    async def allocate(self) -> Path:
        """Reserve a new, empty spool file for the next mail.

        Raises AllocationError if the file cannot be created; nothing is
        left behind in that case.
        """
        path = self.spool_dir / self._generate_filename()
        try:
            async with aiofiles.open(path, "xb"):
                pass
        except OSError as e:
            logger.error("spool_allocate_failed", error=str(e))
            raise AllocationError(f"Cannot reserve spool file: {e}") from e

        try:
            path.chmod(0o600)
        except OSError as e:
            logger.error("spool_allocate_failed", filename=path.name, error=str(e))
            await self.release(path)
            raise AllocationError(f"Cannot reserve spool file: {e}") from e
        return path

    async def write(self, path: Path, raw: bytes) -> None:
        """Write mail bytes to a reserved spool file and verify the size.

        Raises SpoolError if the write fails or is incomplete.
        """
        try:
            async with aiofiles.open(path, "wb") as f:
                await f.write(raw)

            actual_size = (await aiofiles.os.stat(path)).st_size
            if actual_size != len(raw):
                raise SpoolError(f"File size mismatch: expected {len(raw)}, got {actual_size}")
        except OSError as e:
            logger.error("spool_write_failed", filename=path.name, error=str(e))
            raise SpoolError(f"Failed to write {path.name}: {e}") from e

    async def load(self, path: Path, sender: str, recipients: list[str]) -> MailObject:
        """Rebuild a MailObject from the spool file.

        The envelope is not stored in the file, so the caller supplies it.
        """
        try:
            async with aiofiles.open(path, "rb") as f:
                raw = await f.read()
        except OSError as e:
            raise SpoolError(f"Failed to read {path.name}: {e}") from e
        return MailObject.parse(raw, sender, recipients)

    async def replace(self, byproduct: Path, path: Path) -> None:
        """Atomically promote a transform byproduct over the spool file.

        Raises PersistReplaceError if the rename fails; the original file
        is untouched in that case.
        """
        try:
            await aiofiles.os.replace(byproduct, path)
        except OSError as e:
            raise PersistReplaceError(f"Cannot replace {path.name}: {e}") from e

    async def release(self, path: Path) -> None:
        """Delete a reserved-but-unused spool file or a stale byproduct."""
        try:
            if await aiofiles.os.path.exists(path):
                await aiofiles.os.remove(path)
                logger.debug("spool_released", filename=path.name)
        except OSError as e:
            logger.warning("spool_release_failed", filename=path.name, error=str(e))

    async def remove(self, path: Path) -> bool:
        """Delete the spool file of a mail the relay accepted."""
        try:
            await aiofiles.os.remove(path)
            logger.debug("spool_removed", filename=path.name)
            return True
        except OSError as e:
            logger.warning("spool_remove_failed", filename=path.name, error=str(e))
            return False

    async def count_pending(self) -> int:
        """Count mail files left in the spool."""
        try:
            if not await aiofiles.os.path.exists(self.spool_dir):
                return 0
            entries = await aiofiles.os.listdir(self.spool_dir)
            return len([e for e in entries if e.endswith(MAIL_SUFFIX)])
        except OSError:
            return 0
