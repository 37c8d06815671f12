from smime_gate.policy.engine import RuleEngine
from smime_gate.policy.rules import (
    DecryptRule,
    EncryptRule,
    Policy,
    Rule,
    SignRule,
    VerifyRule,
    load_policy,
)

__all__ = [
    "DecryptRule",
    "EncryptRule",
    "Policy",
    "Rule",
    "RuleEngine",
    "SignRule",
    "VerifyRule",
    "load_policy",
]
