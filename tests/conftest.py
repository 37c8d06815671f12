"""Pytest configuration and fixtures."""

import os
from pathlib import Path

import pytest

# Set test environment variables before importing settings
os.environ.update(
    {
        "RELAY_HOST": "relay.test.local",
    }
)


@pytest.fixture
def mock_settings(tmp_path: Path):
    """Settings pointing the spool at a temporary directory."""
    from smime_gate.config import Settings

    return Settings(
        _env_file=None,
        spool_dir=str(tmp_path / "spool"),
        policy_path=str(tmp_path / "policy.yaml"),
        tool_timeout=5,
    )


@pytest.fixture
def spool_store(mock_settings):
    """SpoolStore with its directory created."""
    from smime_gate.transport.spool import SpoolStore

    store = SpoolStore(mock_settings)
    store.spool_dir.mkdir(parents=True, exist_ok=True)
    return store


@pytest.fixture
def sample_email_bytes():
    """Sample raw email bytes."""
    return b"""From: alice@x.com
To: bob@partner.org
Subject: Quarterly numbers
Message-ID: <test-123@x.com>
Content-Type: text/plain

Numbers attached.
"""


@pytest.fixture
def other_email_bytes():
    """A second mail that no rule in the sample policy touches."""
    return b"""From: carol@elsewhere.net
To: dave@elsewhere.net
Subject: Lunch
Message-ID: <lunch-456@elsewhere.net>
Content-Type: text/plain

Noon?
"""


@pytest.fixture
def sample_policy():
    """Policy with one rule per table."""
    from smime_gate.policy import DecryptRule, EncryptRule, Policy, SignRule, VerifyRule

    return Policy(
        sign=(
            SignRule(
                sender="alice",
                cert_path="/certs/alice.pem",
                key_path="/keys/alice.key",
                passphrase="alice-secret",
            ),
        ),
        encrypt=(EncryptRule(recipient="partner.org", cert_path="/certs/partner.pem"),),
        decrypt=(
            DecryptRule(
                recipient="@x.com",
                cert_path="/certs/x.pem",
                key_path="/keys/x.key",
                passphrase="x-secret",
            ),
        ),
        verify=(
            VerifyRule(
                sender="partner.org",
                cert_path="/certs/partner.pem",
                ca_cert_path="/certs/ca.pem",
            ),
        ),
    )
