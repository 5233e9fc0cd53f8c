"""
Warden - Password Reset

Single-use reset tokens. Redemption is all-or-nothing: the token is
consumed, the password hash replaced and every standing session revoked
in one transaction, or none of it happens.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from sqlalchemy import update
from sqlmodel import select

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth import codec
from warden.auth.models import PasswordReset, User
from warden.auth.repository import UserRepository
from warden.auth.sessions import SessionManager
from warden.clock import Clock, SystemClock
from warden.config import SecurityPolicy
from warden.database import SessionFactory, transaction
from warden.errors import FailureCode, InvariantViolation, Outcome
from warden.logging import get_logger
from warden.notifications import LoggingNotificationSender, Notification, NotificationSender, dispatch


logger = get_logger(__name__)

PASSWORD_CHANGE_REASON = "password_reset"


@dataclass(frozen=True)
class IssuedPasswordReset:
    """
    Attributes:
        record: The stored reset row
        token: Value delivered to the user ("<selector>.<secret>")
    """
    record: PasswordReset
    token: str


class PasswordResetManager:
    """
    Usage:
        resets = PasswordResetManager(session_factory, audit, sessions, policy)
        issued = resets.issue(user.id).unwrap()
        outcome = resets.redeem(issued.token, hash_password(new_password))
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger,
        sessions: SessionManager,
        policy: SecurityPolicy = None,
        clock: Clock = None,
        notifier: NotificationSender = None,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._sessions = sessions
        self._policy = policy or SecurityPolicy()
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotificationSender()

    def issue(
        self,
        user_id: str,
        ttl: Optional[timedelta] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[IssuedPasswordReset]:
        """
        Issue a reset token; earlier unused tokens for the user stop working.

        Failures:
            not_found: unknown user
        """
        now = self._clock.now()
        split = codec.issue_split_token()

        with transaction(self._session_factory) as db:
            user = UserRepository(db).find_by_id(user_id, for_update=True)
            if user is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "User not found")

            superseded = db.execute(
                update(PasswordReset)
                .where(
                    PasswordReset.user_id == user_id,
                    PasswordReset.used_at.is_(None),
                    PasswordReset.superseded_at.is_(None),
                )
                .values(superseded_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            record = PasswordReset(
                token=split.selector,
                token_hash=codec.hash_secret(split.verifier),
                user_id=user_id,
                expires_at=now + (ttl or self._policy.reset_token_ttl),
                created_at=now,
            )
            db.add(record)
            db.flush()

            self._audit.record(
                db,
                AuditAction.PASSWORD_RESET_REQUESTED,
                target_user_id=user_id,
                details={"reset_id": record.id, "superseded": superseded},
                ip=ip_address,
                user_agent=user_agent,
            )

        dispatch(self._notifier, user, Notification(
            template="password_reset",
            context={"token": split.value, "expires_at": record.expires_at.isoformat()},
        ))
        logger.info("password_reset_issued", user_id=user_id)
        return Outcome.success(IssuedPasswordReset(record=record, token=split.value))

    def request_for_email(
        self,
        email: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        """
        Start a reset by email address.

        Returns nothing in every case so the caller's response cannot tell
        whether the address belongs to an account.
        """
        with transaction(self._session_factory) as db:
            user = UserRepository(db).find_by_email(email)

        if user is None:
            logger.info("password_reset_unknown_email")
            return
        self.issue(user.id, ip_address=ip_address, user_agent=user_agent)

    def redeem(
        self,
        token: str,
        new_password_hash: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[User]:
        """
        Consume a reset token and install a new password hash.

        In one transaction: mark the token used, update the user's password
        hash and password_changed_at, clear login lockout, revoke all
        sessions, write the audit entry. Any exception rolls back all of it.

        Failures:
            not_found, already_used, expired
        """
        parsed = codec.parse_split_token(token)
        if parsed is None:
            return Outcome.fail(FailureCode.NOT_FOUND, "Reset token not found")
        selector, verifier = parsed
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            record = db.exec(
                select(PasswordReset).where(PasswordReset.token == selector)
            ).first()
            if record is None or not codec.matches_hash(verifier, record.token_hash):
                return Outcome.fail(FailureCode.NOT_FOUND, "Reset token not found")
            if record.used_at is not None:
                return Outcome.fail(FailureCode.ALREADY_USED, "Reset token already used")
            if record.superseded_at is not None or now >= record.expires_at:
                return Outcome.fail(FailureCode.EXPIRED, "Reset token expired")

            consumed = db.execute(
                update(PasswordReset)
                .where(PasswordReset.id == record.id, PasswordReset.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if consumed != 1:
                return Outcome.fail(FailureCode.ALREADY_USED, "Reset token already used")

            users = UserRepository(db)
            user = users.find_by_id(record.user_id)
            if user is None:
                raise InvariantViolation(f"Reset {record.id} belongs to a missing user")

            user.password_hash = new_password_hash
            user.password_changed_at = now
            user.failed_login_attempts = 0
            user.locked_until = None
            users.update(user, now)

            revoked = self._sessions.revoke_all_for_user(user.id, PASSWORD_CHANGE_REASON, db=db)

            self._audit.record(
                db,
                AuditAction.USER_PASSWORD_RESET,
                performed_by_id=user.id,
                target_user_id=user.id,
                details={"reset_id": record.id, "sessions_revoked": revoked},
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info("password_reset_completed", user_id=user.id, sessions_revoked=revoked)
        return Outcome.success(user)
