from smime_gate.models.mail import Batch, MailObject, PersistedMail
from smime_gate.models.outcomes import (
    Action,
    ForwardOutcome,
    SessionReport,
    SessionState,
    TransformOutcome,
)

__all__ = [
    "Action",
    "Batch",
    "ForwardOutcome",
    "MailObject",
    "PersistedMail",
    "SessionReport",
    "SessionState",
    "TransformOutcome",
]
