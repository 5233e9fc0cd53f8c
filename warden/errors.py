"""
Warden - Error Taxonomy

Two kinds of failure:

- Expected outcomes (expired token, wrong proof, closed appeal window, ...)
  are returned as Outcome values carrying a Failure. Callers map them to
  user-facing responses (see Failure.http_status / Failure.public_code).
  Returning instead of raising also lets a failed attempt commit its own
  bookkeeping (attempt counters, audit entries).
- Fatal errors are raised: StorageFailure wraps database errors after the
  enclosing transaction has been rolled back; InvariantViolation flags a
  state the preconditions should have made impossible.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar


T = TypeVar("T")


class FailureCode(str, Enum):
    """Expected, caller-recoverable failure causes."""
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ALREADY_USED = "already_used"
    ALREADY_RESOLVED = "already_resolved"
    ATTEMPTS_EXCEEDED = "attempts_exceeded"
    PROOF_MISMATCH = "proof_mismatch"

    # Sessions
    SESSION_INVALID = "session_invalid"
    SESSION_REVOKED = "session_revoked"
    SESSION_EXPIRED = "session_expired"

    # Login
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_SUSPENDED = "account_suspended"
    ACCOUNT_DISABLED = "account_disabled"
    EMAIL_NOT_VERIFIED = "email_not_verified"
    ACCOUNT_TRIAL_EXPIRED = "account_trial_expired"

    # Preconditions
    ALREADY_SUSPENDED = "already_suspended"
    APPEAL_WINDOW_CLOSED = "appeal_window_closed"
    APPEAL_NOT_ALLOWED = "appeal_not_allowed"
    NOT_ACTIVE = "not_active"
    NO_PENDING_APPEAL = "no_pending_appeal"
    CANNOT_SUSPEND_SELF = "cannot_suspend_self"
    CANNOT_SUSPEND_PRIVILEGED = "cannot_suspend_privileged"


# Codes that describe a credential or session problem. At the API boundary
# they collapse into one public code so a response never tells the caller
# whether an account or session exists.
_AUTHENTICATION_CODES = frozenset({
    FailureCode.SESSION_INVALID,
    FailureCode.SESSION_REVOKED,
    FailureCode.SESSION_EXPIRED,
    FailureCode.INVALID_CREDENTIALS,
    FailureCode.ACCOUNT_LOCKED,
})

_HTTP_STATUS = {
    FailureCode.NOT_FOUND: 404,
    FailureCode.EXPIRED: 410,
    FailureCode.ALREADY_USED: 410,
    FailureCode.ALREADY_RESOLVED: 409,
    FailureCode.ATTEMPTS_EXCEEDED: 429,
    FailureCode.PROOF_MISMATCH: 400,
    FailureCode.SESSION_INVALID: 401,
    FailureCode.SESSION_REVOKED: 401,
    FailureCode.SESSION_EXPIRED: 401,
    FailureCode.INVALID_CREDENTIALS: 401,
    FailureCode.ACCOUNT_LOCKED: 401,
    FailureCode.ACCOUNT_SUSPENDED: 403,
    FailureCode.ACCOUNT_DISABLED: 403,
    FailureCode.EMAIL_NOT_VERIFIED: 403,
    FailureCode.ACCOUNT_TRIAL_EXPIRED: 403,
    FailureCode.ALREADY_SUSPENDED: 409,
    FailureCode.APPEAL_WINDOW_CLOSED: 403,
    FailureCode.APPEAL_NOT_ALLOWED: 403,
    FailureCode.NOT_ACTIVE: 409,
    FailureCode.NO_PENDING_APPEAL: 409,
    FailureCode.CANNOT_SUSPEND_SELF: 403,
    FailureCode.CANNOT_SUSPEND_PRIVILEGED: 403,
}


@dataclass(frozen=True)
class Failure:
    """An expected failure with its internal cause."""
    code: FailureCode
    message: str = ""

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.code]

    @property
    def public_code(self) -> str:
        """Code safe to expose to the client."""
        if self.code in _AUTHENTICATION_CODES:
            return "unauthenticated"
        return self.code.value


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """
    Result of a workflow operation: either a value or a Failure.

    Usage:
        outcome = manager.refresh(token)
        if not outcome.ok:
            return error_response(outcome.failure.http_status)
        session, access_token = outcome.value
    """
    value: Optional[T] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def code(self) -> Optional[FailureCode]:
        return self.failure.code if self.failure else None

    @classmethod
    def success(cls, value: T = None) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def fail(cls, code: FailureCode, message: str = "") -> "Outcome[T]":
        return cls(failure=Failure(code=code, message=message))

    def unwrap(self) -> T:
        """Return the value or raise OutcomeError."""
        if self.failure is not None:
            raise OutcomeError(self.failure)
        return self.value


class WardenError(Exception):
    """Base class for raised errors."""
    pass


class OutcomeError(WardenError):
    """Raised by Outcome.unwrap() on a failed outcome."""

    def __init__(self, failure: Failure):
        self.failure = failure
        super().__init__(f"{failure.code.value}: {failure.message}")


class StorageFailure(WardenError):
    """
    The backing store rejected an operation.

    Raised after the enclosing transaction was rolled back, so no partial
    side effect survives. Also covers unique-constraint violations reached
    despite a passing precondition check (a concurrent writer won).
    """
    pass


class InvariantViolation(WardenError):
    """A state that preconditions should have excluded was observed."""
    pass


class EmailAlreadyRegistered(WardenError):
    """Raised when adding a user whose email is already taken."""
    pass
