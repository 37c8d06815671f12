"""
Policy rule tables for SMIME Gate.

The policy is a YAML file with four ordered lists, one per action:

    sign:
      - sender: "@example.com"
        cert_path: /etc/smime-gate/certs/example.pem
        key_path: /etc/smime-gate/keys/example.key
        passphrase: "..."
    encrypt:
      - recipient: partner.org
        cert_path: /etc/smime-gate/certs/partner.pem
    decrypt:
      - recipient: "@example.com"
        cert_path: /etc/smime-gate/certs/example.pem
        key_path: /etc/smime-gate/keys/example.key
        passphrase: "..."
    verify:
      - sender: partner.org
        cert_path: /etc/smime-gate/certs/partner.pem
        ca_cert_path: /etc/smime-gate/certs/ca.pem

Matchers are case-insensitive substrings. The file is loaded once at
startup into an immutable Policy; rule values end up on the external
tool's command line, so the file must come from the operator only.
"""

from pathlib import Path

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, SecretStr, ValidationError

from smime_gate.exceptions import ConfigurationError

logger = structlog.get_logger(__name__)


def _contains(haystack: str, needle: str | None) -> bool:
    if needle is None:
        return False
    return needle.lower() in haystack.lower()


class _Rule(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    cert_path: str = Field(..., min_length=1)


class _SenderRule(_Rule):
    # A rule without a matcher never applies
    sender: str | None = None

    def matches(self, sender: str) -> bool:
        return _contains(sender, self.sender)


class _RecipientRule(_Rule):
    recipient: str | None = None

    def matches(self, recipient: str) -> bool:
        return _contains(recipient, self.recipient)


class SignRule(_SenderRule):
    key_path: str = Field(..., min_length=1)
    passphrase: SecretStr = SecretStr("")


class EncryptRule(_RecipientRule):
    pass


class DecryptRule(_RecipientRule):
    key_path: str = Field(..., min_length=1)
    passphrase: SecretStr = SecretStr("")


class VerifyRule(_SenderRule):
    ca_cert_path: str = Field(..., min_length=1)


Rule = SignRule | EncryptRule | DecryptRule | VerifyRule


class Policy(BaseModel):
    """The four ordered rule tables. Immutable once loaded."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    sign: tuple[SignRule, ...] = ()
    encrypt: tuple[EncryptRule, ...] = ()
    decrypt: tuple[DecryptRule, ...] = ()
    verify: tuple[VerifyRule, ...] = ()


def load_policy(path: str | Path) -> Policy:
    """Load and validate the policy file.

    Args:
        path: Location of the YAML policy file.

    Returns:
        The validated, immutable Policy.

    Raises:
        ConfigurationError: If the file cannot be read, is not valid YAML,
            or does not describe valid rule tables.
    """
    policy_file = Path(path)
    try:
        text = policy_file.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read policy file {policy_file}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in policy file {policy_file}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Policy file {policy_file} must contain a mapping")

    try:
        policy = Policy.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid policy in {policy_file}: {e}") from e

    logger.info(
        "policy_loaded",
        path=str(policy_file),
        sign_rules=len(policy.sign),
        encrypt_rules=len(policy.encrypt),
        decrypt_rules=len(policy.decrypt),
        verify_rules=len(policy.verify),
    )
    return policy
