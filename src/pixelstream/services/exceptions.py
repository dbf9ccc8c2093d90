"""Service error hierarchy for batch generation, storage and job control.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- TransientError: Retryable errors (network, rate limits, timeouts)
- PermanentError: Non-retryable errors (authentication, validation, configuration)
- BatchJobError: Job control errors surfaced to API callers
"""


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Rate limit exceeded (429)
    - Service unavailable (503)
    - Object storage upload failures
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    - Missing or undecryptable credentials
    """

    pass


# Item-level errors
class CredentialError(PermanentError):
    """The owner's upstream API key is missing or cannot be decrypted."""

    pass


class StorageError(TransientError):
    """Uploading generated media to object storage failed."""

    pass


# Job control errors
class BatchJobError(ServiceError):
    """Base exception for batch job control errors."""

    pass


class InvalidCount(BatchJobError):
    """Requested item count is outside the allowed range."""

    pass


class AccessDenied(BatchJobError):
    """Owner lacks generation entitlement."""

    pass


class JobNotFound(BatchJobError):
    """Batch job does not exist."""

    pass


class NotOwner(BatchJobError):
    """Batch job belongs to another owner."""

    pass


class InvalidState(BatchJobError):
    """Requested transition is not allowed from the job's current status."""

    pass
