from smime_gate.core.logging import configure_logging, redact_secrets, sanitize_for_log

__all__ = ["configure_logging", "redact_secrets", "sanitize_for_log"]
