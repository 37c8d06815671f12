"""Custom exceptions for SMIME Gate.

This module defines the exception hierarchy used throughout the
SMIME Gate package for error handling and reporting.
"""


class SmimeGateError(Exception):
    """Base exception for all SMIME Gate errors.

    All custom exceptions in the smime_gate package inherit from
    this class, allowing for broad exception catching when needed.

    Attributes:
        message: A human-readable description of the error.
    """

    def __init__(self, message: str = "An error occurred in SMIME Gate") -> None:
        """Initialize the exception with an optional message.

        Args:
            message: A description of the error that occurred.
        """
        self.message = message
        super().__init__(self.message)


class ConfigurationError(SmimeGateError):
    """Raised when there is an error in the configuration.

    This exception is raised when the policy file is missing,
    malformed, or contains invalid rules.
    """

    def __init__(self, message: str = "Configuration error") -> None:
        super().__init__(message)


class AllocationError(SmimeGateError):
    """Raised when a spool slot for the next mail cannot be reserved."""

    def __init__(self, message: str = "Spool allocation failed") -> None:
        super().__init__(message)


class CapacityExceededError(SmimeGateError):
    """Raised when a mail is appended to a batch that is already full.

    Attributes:
        capacity: The batch capacity that was reached.
    """

    def __init__(self, message: str = "Batch capacity exceeded", capacity: int | None = None) -> None:
        self.capacity = capacity
        super().__init__(message)


class ToolInvocationError(SmimeGateError):
    """Raised when the external S/MIME tool cannot be launched."""

    def __init__(self, message: str = "S/MIME tool invocation failed") -> None:
        super().__init__(message)


class ToolTimeoutError(ToolInvocationError):
    """Raised when the external S/MIME tool exceeds its time limit.

    Attributes:
        timeout: The limit in seconds that was exceeded.
    """

    def __init__(self, message: str = "S/MIME tool timed out", timeout: float | None = None) -> None:
        self.timeout = timeout
        super().__init__(message)


class PersistReplaceError(SmimeGateError):
    """Raised when a transform byproduct cannot replace the spooled mail."""

    def __init__(self, message: str = "Failed to replace spooled mail") -> None:
        super().__init__(message)


class TransportError(SmimeGateError):
    """Raised when sending or receiving a mail fails.

    This exception is raised for SMTP-level problems on either the
    inbound session or the outbound relay session.
    """

    def __init__(self, message: str = "Mail transport error") -> None:
        super().__init__(message)


class SessionAbortedError(TransportError):
    """Raised when the inbound client disconnects in the middle of a session."""

    def __init__(self, message: str = "Inbound session aborted") -> None:
        super().__init__(message)


class SpoolError(SmimeGateError):
    """Raised when a mail cannot be written to or read from the spool."""

    def __init__(self, message: str = "Spool error") -> None:
        super().__init__(message)
