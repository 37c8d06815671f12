"""First-match rule lookup over the policy tables."""

from collections.abc import Iterable
from typing import TypeVar

from smime_gate.models import MailObject
from smime_gate.policy.rules import (
    DecryptRule,
    EncryptRule,
    Policy,
    SignRule,
    VerifyRule,
)

R = TypeVar("R", SignRule, EncryptRule, DecryptRule, VerifyRule)


def _first_match(table: Iterable[R], value: str) -> R | None:
    for rule in table:
        if rule.matches(value):
            return rule
    return None


class RuleEngine:
    """Decide which rule, if any, applies to a mail for each action.

    SIGN and VERIFY look at the envelope sender. ENCRYPT and DECRYPT only
    apply to mails with exactly one recipient and look at that recipient.
    """

    def __init__(self, policy: Policy) -> None:
        self.policy = policy

    def match_sign(self, mail: MailObject) -> SignRule | None:
        return _first_match(self.policy.sign, mail.sender)

    def match_encrypt(self, mail: MailObject) -> EncryptRule | None:
        # sole_recipient is recipients[0], the one entry of the list
        recipient = mail.sole_recipient
        if recipient is None:
            return None
        return _first_match(self.policy.encrypt, recipient)

    def match_decrypt(self, mail: MailObject) -> DecryptRule | None:
        recipient = mail.sole_recipient
        if recipient is None:
            return None
        return _first_match(self.policy.decrypt, recipient)

    def match_verify(self, mail: MailObject) -> VerifyRule | None:
        return _first_match(self.policy.verify, mail.sender)
