"""
Custom exception classes for the Postify system.

This module defines all exception classes used throughout the codebase.
Components raise typed errors carrying a specific reason rather than opaque
failures; upstream callers own user-facing messaging.

Hierarchy:
    Exception
    +-- PostifyError (base for all domain errors)
    |   +-- ConnectionFailure
    |   |   +-- ConflictCooldownError
    |   |   +-- AuthRevokedError
    |   |   +-- CredentialNotFoundError
    |   |   +-- TransientFailureError
    |   +-- ScheduleStateError
    |   +-- JobFireError
    |   +-- ResourceBusyError
    |   +-- RateLimitedError
    +-- ValidationError (ValueError)
    |   +-- ParseError
    |   +-- NotFoundError
    |   +-- UnauthorizedError
    +-- DatabaseError
    +-- ConfigurationError
    +-- SecurityError
    |   +-- CredentialDecryptError
    +-- RetryExhaustedError
"""

from datetime import datetime
from typing import Any, Optional


# =============================================================================
# BASE EXCEPTION
# =============================================================================


class PostifyError(Exception):
    """Base exception for all Postify domain errors."""

    pass


# =============================================================================
# CORE EXCEPTIONS
# =============================================================================


class ValidationError(ValueError):
    """Raised when input validation fails. Never retried."""

    pass


class DatabaseError(Exception):
    """Raised when the persistence layer cannot be read or written.

    Fatal to the in-progress operation; never converted into a cooldown.
    """

    pass


class ConfigurationError(Exception):
    """Raised when system configuration is invalid."""

    pass


class SecurityError(Exception):
    """Raised when a security check fails."""

    pass


class RetryExhaustedError(Exception):
    """Raised when all retry attempts have been exhausted.

    Attributes:
        operation: Name of the operation that was retried.
        attempts: Total number of attempts made.
        last_error: The last exception raised before giving up.
    """

    def __init__(self, operation: str, attempts: int, last_error: Exception):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempts. "
            f"Last error: {last_error}"
        )


# =============================================================================
# VALIDATION EXCEPTIONS
# =============================================================================


class ParseError(ValidationError):
    """Raised when a human time expression cannot be turned into an instant.

    Attributes:
        reason: Human-readable explanation suitable for showing to the tenant.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class NotFoundError(ValidationError):
    """Raised when a post, channel or job does not exist."""

    pass


class UnauthorizedError(ValidationError):
    """Raised when a tenant does not own the post or channel it acts on."""

    pass


class CredentialDecryptError(SecurityError):
    """Raised when a stored credential cannot be decrypted or authenticated."""

    pass


# =============================================================================
# CONNECTION EXCEPTIONS
# =============================================================================


class ConnectionFailure(PostifyError):
    """Base for every failure returned by ``ConnectionSupervisor.acquire``.

    Attributes:
        tenant_id: Tenant whose connection could not be provided.
        reason: Failure classification (a ``FailureKind`` value, or ``None``
            when the failure was not produced by the transport).
        until: End of the active cooldown, when one applies.
    """

    def __init__(
        self,
        tenant_id: int,
        message: str,
        reason: Any = None,
        until: Optional[datetime] = None,
    ):
        self.tenant_id = tenant_id
        self.reason = reason
        self.until = until
        super().__init__(message)


class ConflictCooldownError(ConnectionFailure):
    """Another consumer holds the credential; short cooldown in effect."""

    pass


class AuthRevokedError(ConnectionFailure):
    """The credential was rejected outright; a fresh one must be supplied."""

    pass


class CredentialNotFoundError(ConnectionFailure):
    """No active credential is stored for the tenant."""

    pass


class TransientFailureError(ConnectionFailure):
    """Unclassified network/runtime failure; eligible for retry."""

    pass


# =============================================================================
# SCHEDULING EXCEPTIONS
# =============================================================================


class ScheduleStateError(PostifyError):
    """Raised when a job or post is not in a state that allows the action."""

    pass


class JobFireError(PostifyError):
    """Raised when the publish attempt at fire time fails.

    Attributes:
        kind: Failure classification from the transport boundary.
    """

    def __init__(self, message: str, kind: Any = None):
        self.kind = kind
        super().__init__(message)


# =============================================================================
# GATE EXCEPTIONS
# =============================================================================


class ResourceBusyError(PostifyError):
    """Raised when another mutating action holds the resource lock.

    Attributes:
        resource_key: The contended resource.
    """

    def __init__(self, resource_key: str):
        self.resource_key = resource_key
        super().__init__(f"Resource '{resource_key}' is busy")


class RateLimitedError(PostifyError):
    """Raised when a tenant exceeded its action budget for the window.

    Attributes:
        tenant_id: The limited tenant.
        retry_after: Seconds until the window rolls over.
    """

    def __init__(self, tenant_id: int, retry_after: float):
        self.tenant_id = tenant_id
        self.retry_after = retry_after
        super().__init__(
            f"Tenant {tenant_id} is rate limited; retry in {retry_after:.0f}s"
        )


# =============================================================================
# PUBLIC API
# =============================================================================

__all__ = [
    # Base
    "PostifyError",
    # Core
    "ValidationError",
    "DatabaseError",
    "ConfigurationError",
    "SecurityError",
    "RetryExhaustedError",
    # Validation
    "ParseError",
    "NotFoundError",
    "UnauthorizedError",
    "CredentialDecryptError",
    # Connections
    "ConnectionFailure",
    "ConflictCooldownError",
    "AuthRevokedError",
    "CredentialNotFoundError",
    "TransientFailureError",
    # Scheduling
    "ScheduleStateError",
    "JobFireError",
    # Gates
    "ResourceBusyError",
    "RateLimitedError",
]
