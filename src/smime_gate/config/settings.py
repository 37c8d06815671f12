"""
Pydantic Settings configuration for SMIME Gate.

Loads service configuration from environment variables. The rule tables
live in a separate policy file (see smime_gate.policy) referenced by
``policy_path``.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Inbound SMTP listener
    listen_host: str = Field("127.0.0.1")
    listen_port: int = Field(2525, ge=1, le=65535)
    # Largest DATA payload accepted from a client (32 MiB)
    data_size_limit: int = Field(33554432, ge=1024)

    # Downstream relay
    # Only hostname characters allowed
    relay_host: str = Field(..., pattern=r"^[a-zA-Z0-9.-]+$")
    relay_port: int = Field(25, ge=1, le=65535)
    relay_timeout: int = Field(30, ge=1, le=300)

    # Intake buffering
    spool_dir: str = Field("/var/spool/smime-gate")
    batch_capacity: int = Field(5, ge=1, le=1000)

    # Transform policy and external tool
    policy_path: str = Field("/etc/smime-gate/policy.yaml")
    tool_path: str = Field("smime-tool")
    tool_timeout: int = Field(60, ge=1, le=600)

    # Logging settings
    log_format: str = Field("console")  # "json" or "console"
    debug: bool = Field(False)

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Uses lru_cache to ensure only one Settings instance is created,
    avoiding repeated environment variable parsing.
    """
    return Settings()  # type: ignore[call-arg]
