from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class SessionState(str, Enum):
    """Session token passed with every transport send/receive call.

    NEW starts a session, NXT continues it, ERR tells the transport to
    terminate because of a local failure or a full batch.
    """

    NEW = "NEW"
    NXT = "NXT"
    ERR = "ERR"


class Action(str, Enum):
    SIGN = "sign"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    VERIFY = "verify"


class TransformOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"


@dataclass
class ForwardOutcome:
    path: Path
    message_id: str
    delivered: bool
    error: str | None = None


@dataclass
class SessionReport:
    received: int = 0
    transforms: dict[str, dict[Action, TransformOutcome]] = field(default_factory=dict)
    forwarded: list[ForwardOutcome] = field(default_factory=list)
    aborted: bool = False

    @property
    def delivered_count(self) -> int:
        return sum(1 for outcome in self.forwarded if outcome.delivered)

    @property
    def failed_count(self) -> int:
        return sum(1 for outcome in self.forwarded if not outcome.delivered)
