"""Exception taxonomy raised by the identity core.

Expected, user-recoverable outcomes (code mismatches, token rotation results)
are returned as typed values by the components; the exceptions below cover
everything the caller has to branch on when an operation does not complete.
"""

from __future__ import annotations

from datetime import datetime, timedelta


class IdentityError(Exception):
    """Base class for all identity core failures."""

    code = "identity_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code.replace("_", " "))


class ValidationError(IdentityError):
    """Malformed input; the caller's fault and never retried by the core."""

    code = "validation_error"

    def __init__(self, message: str | None = None, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])


class InvalidTransitionError(ValidationError):
    """Requested role or status change is not permitted from the current state."""

    code = "invalid_transition"


class ConflictError(IdentityError):
    """A unique field (contact or OAuth identity) already belongs to another account."""

    code = "conflict"


class LinkingConflictError(ConflictError):
    """An OAuth login matched a password account by email but not by identity."""

    code = "linking_conflict"

    def __init__(self, account_id: str, provider_name: str) -> None:
        super().__init__(f"email already registered; link {provider_name} explicitly")
        self.account_id = account_id
        self.provider_name = provider_name


class InvalidCredentials(IdentityError):
    """Login failed. Deliberately silent on which factor was wrong."""

    code = "invalid_credentials"


class TokenReuseError(InvalidCredentials):
    """A rotated refresh token was presented again; its family has been revoked."""

    code = "refresh_token_reused"


class SessionExpiredError(InvalidCredentials):
    """The presented refresh token is past its expiry."""

    code = "session_expired"


class LockedError(IdentityError):
    """The account is temporarily locked after repeated failures."""

    code = "account_locked"

    def __init__(self, remaining: timedelta, locked_until: datetime | None = None) -> None:
        super().__init__(f"account locked for {int(remaining.total_seconds())} seconds")
        self.remaining = remaining
        self.locked_until = locked_until


class RateLimitedError(IdentityError):
    """Too many attempts against the same contact in the sliding window."""

    code = "rate_limited"


class ThrottledError(IdentityError):
    """Hashing capacity is exhausted; the request was shed instead of queued."""

    code = "throttled"


class ConcurrencyError(IdentityError):
    """Optimistic-concurrency retries were exhausted (or a caller-supplied version was stale)."""

    code = "concurrency_conflict"


class VersionConflictError(IdentityError):
    """Raised by user stores when the expected version no longer matches."""

    code = "version_conflict"


class DeliveryFailedError(IdentityError):
    """The notifier could not deliver a message."""

    code = "delivery_failed"


class UnknownOutcomeError(IdentityError):
    """A state-changing store call timed out; it may or may not have committed."""

    code = "unknown_outcome"


class StoreUnavailableError(IdentityError):
    """Store reads kept failing or timing out after bounded retries."""

    code = "store_unavailable"


class CredentialCorruptedError(IdentityError):
    """A stored password hash could not be parsed."""

    code = "credential_corrupted"


class AccountNotFoundError(IdentityError):
    """No account exists for the given identifier."""

    code = "account_not_found"
