"""Mail data models for smime-gate.

This module provides the in-memory representation of a buffered mail,
its pairing with a spool file, and the bounded batch that one inbound
session fills.
"""

from collections.abc import Iterator
from dataclasses import dataclass, field
from email import message_from_bytes
from email.header import decode_header
from pathlib import Path

from smime_gate.exceptions import CapacityExceededError

DEFAULT_BATCH_CAPACITY = 5


def _decode_header(val: object) -> str:
    """Decode an RFC 2047 header value into a plain str."""
    if val is None:
        return ""
    try:
        decoded = []
        for fragment, charset in decode_header(str(val)):
            if isinstance(fragment, bytes):
                decoded.append(fragment.decode(charset or "utf-8", errors="replace"))
            else:
                decoded.append(fragment)
        return " ".join(decoded)
    except Exception:
        return str(val)


@dataclass
class MailObject:
    """A mail as received from the client, with its SMTP envelope.

    The envelope comes from the SMTP session and is what policy rules
    match against. Header fields are parsed from ``raw`` and only used
    for logging.

    Attributes:
        sender: The envelope sender (MAIL FROM).
        recipients: The envelope recipients (RCPT TO), in order.
        raw: The canonical message bytes, identical to the spool file.
        message_id: The Message-ID header value.
        subject: The Subject header value.
        content_type: The top-level Content-Type, e.g. application/pkcs7-mime.
    """

    sender: str
    recipients: list[str]
    raw: bytes
    message_id: str = ""
    subject: str = ""
    content_type: str = ""

    @property
    def recipient_count(self) -> int:
        return len(self.recipients)

    @property
    def sole_recipient(self) -> str | None:
        """The recipient when there is exactly one, otherwise None."""
        if self.recipient_count != 1:
            return None
        # Always index 0, the only entry; no later slot exists
        return self.recipients[0]

    @classmethod
    def parse(cls, raw: bytes, sender: str, recipients: list[str]) -> "MailObject":
        msg = message_from_bytes(raw)
        return cls(
            sender=sender,
            recipients=list(recipients),
            raw=raw,
            message_id=_decode_header(msg.get("Message-ID")),
            subject=_decode_header(msg.get("Subject")),
            content_type=msg.get_content_type(),
        )


@dataclass
class PersistedMail:
    """One buffered mail paired with the spool file holding its bytes.

    ``stale`` is set when the spool file was replaced but could not be
    read back, so ``mail`` no longer matches the file.
    """

    mail: MailObject
    path: Path
    stale: bool = False


@dataclass
class Batch:
    """Ordered, bounded set of mails received during one inbound session.

    Appending past ``capacity`` raises CapacityExceededError; the batch
    never grows beyond it.
    """

    capacity: int = DEFAULT_BATCH_CAPACITY
    records: list[PersistedMail] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.capacity < 1:
            raise ValueError(f"Batch capacity must be positive, got {self.capacity}")

    @property
    def full(self) -> bool:
        return len(self.records) >= self.capacity

    def append(self, record: PersistedMail) -> None:
        if self.full:
            raise CapacityExceededError(
                f"Batch already holds {self.capacity} mails", capacity=self.capacity
            )
        self.records.append(record)

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[PersistedMail]:
        return iter(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)
