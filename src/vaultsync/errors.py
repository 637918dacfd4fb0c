"""Exception taxonomy.

Learn: Two families live here.

1. Producer/API errors — raised synchronously to whoever called us
   (ValidationError, NotFoundError, OwnershipError, InvalidTransitionError,
   QueueUnavailableError). FastAPI handlers in main.py map them to HTTP codes.
2. Pipeline errors — the external service classification. A failed analysis
   call raises exactly one of RetryableServiceError / UnrecoverableServiceError;
   the worker pool turns that class into a queue ack. Nobody inspects flags.

Skips (asset deleted, owner changed) are NOT errors — see workers.analysis.JobOutcome.
"""

AUTH_REQUIRED = "authentication required"
INVALID_TOKEN = "invalid token"
TOKEN_EXPIRED = "token expired"


class VaultSyncError(Exception):
    """Base class for all vaultsync errors."""


# ─── Producer / API ─────────────────────────────────────


class ValidationError(VaultSyncError):
    """Input failed validation (missing or malformed field)."""


class NotFoundError(VaultSyncError):
    """The referenced entity does not exist."""


class OwnershipError(VaultSyncError):
    """The caller does not own the referenced entity."""


class InvalidTransitionError(VaultSyncError):
    """Asset status change not allowed by the lifecycle."""

    def __init__(self, current: str, attempted: str):
        self.current = current
        self.attempted = attempted
        super().__init__(f"Cannot move asset from '{current}' to '{attempted}'")


class AuthError(VaultSyncError):
    """Credential missing, invalid or expired.

    `reason` is always one of AUTH_REQUIRED, INVALID_TOKEN, TOKEN_EXPIRED.
    """

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


# ─── Queue ──────────────────────────────────────────────


class QueueUnavailableError(VaultSyncError):
    """The backing store could not accept the job. Nothing was persisted."""


class QueueExhaustedError(VaultSyncError):
    """A job used all of its attempts (or stalled too often)."""


class LeaseLostError(VaultSyncError):
    """The worker's lease on a job was reclaimed before it acknowledged."""


# ─── External analysis service ──────────────────────────


class ServiceError(VaultSyncError):
    """Base for analysis service failures."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class RetryableServiceError(ServiceError):
    """Transient failure: timeout, connection failure, 5xx. Queue retries."""


class UnrecoverableServiceError(ServiceError):
    """Permanent failure: 4xx or malformed response. Fails immediately."""
