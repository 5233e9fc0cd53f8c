"""
Warden - Login

Credential check, lockout after repeated failures, account status gate,
then session creation.

Security:
- Unknown email, wrong password and locked account produce the same
  invalid_credentials failure, and each spends exactly one bcrypt check so
  timing does not tell them apart
- Account status (suspended, disabled, unverified, trial expired) is only
  revealed after the password was proven correct
- The failed-login counter is incremented inside the database
"""

from typing import Optional

from sqlalchemy import update

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth.models import Role, User, UserStatus
from warden.auth.password import burn_verification_time, verify_password
from warden.auth.repository import UserRepository
from warden.auth.sessions import SessionGrant, SessionManager
from warden.auth.trials import trial_has_ended
from warden.clock import Clock, SystemClock
from warden.config import SecurityPolicy
from warden.database import SessionFactory, transaction
from warden.errors import FailureCode, Outcome
from warden.logging import get_logger


logger = get_logger(__name__)

LOGOUT_REASON = "logout"

_STATUS_FAILURES = {
    UserStatus.SUSPENDED: (FailureCode.ACCOUNT_SUSPENDED, "Account suspended"),
    UserStatus.INACTIVE: (FailureCode.ACCOUNT_DISABLED, "Account disabled"),
    UserStatus.PENDING_VERIFICATION: (FailureCode.EMAIL_NOT_VERIFIED, "Email address not verified"),
    UserStatus.TRIAL_EXPIRED: (FailureCode.ACCOUNT_TRIAL_EXPIRED, "Trial period has expired"),
}


class Authenticator:
    """
    Usage:
        auth = Authenticator(session_factory, audit, sessions, policy)
        outcome = auth.login(email, password, ip_address=ip, user_agent=ua)
        if outcome.ok:
            grant = outcome.value
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger,
        sessions: SessionManager,
        policy: SecurityPolicy = None,
        clock: Clock = None,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._sessions = sessions
        self._policy = policy or SecurityPolicy()
        self._clock = clock or SystemClock()

    def login(
        self,
        email: str,
        password: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
    ) -> Outcome[SessionGrant]:
        """
        Authenticate with email and password and open a session.

        Failures:
            invalid_credentials: unknown email, wrong password or locked
            account_suspended, account_disabled, email_not_verified,
            account_trial_expired
        """
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            users = UserRepository(db)
            user = users.find_by_email(email)

            if user is None:
                burn_verification_time(password)
                logger.info("login_failed", reason="unknown_email")
                return _invalid_credentials()

            if user.locked_until is not None:
                if user.locked_until > now:
                    verify_password(password, user.password_hash)
                    logger.info("login_blocked", user_id=user.id, reason="locked")
                    return _invalid_credentials()
                # Lockout over: start counting afresh
                user.locked_until = None
                user.failed_login_attempts = 0
                users.update(user, now)

            if not verify_password(password, user.password_hash):
                self._record_failure(db, users, user, now, ip_address, user_agent)
                return _invalid_credentials()

            status_failure = _STATUS_FAILURES.get(user.status)
            if status_failure is not None:
                code, message = status_failure
                logger.info("login_blocked", user_id=user.id, reason=code.value)
                return Outcome.fail(code, message)

            if user.role == Role.TENANT_ADMIN and trial_has_ended(user, now):
                logger.info("login_blocked", user_id=user.id, reason=FailureCode.ACCOUNT_TRIAL_EXPIRED.value)
                return Outcome.fail(FailureCode.ACCOUNT_TRIAL_EXPIRED, "Trial period has expired")

            user.failed_login_attempts = 0
            user.locked_until = None
            user.last_login_at = now
            users.update(user, now)

            grant = self._sessions.create_session(
                user.id,
                ip_address=ip_address,
                user_agent=user_agent,
                device_id=device_id,
                db=db,
            )
            self._audit.record(
                db,
                AuditAction.USER_LOGIN,
                performed_by_id=user.id,
                target_user_id=user.id,
                details={"session_id": grant.session.id, "device_id": device_id},
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info("login_succeeded", user_id=user.id, session_id=grant.session.id)
        return Outcome.success(grant)

    def logout(self, session_id: str, ip_address: Optional[str] = None, user_agent: Optional[str] = None):
        """Revoke the caller's session. Repeated logouts succeed."""
        return self._sessions.revoke(
            session_id,
            LOGOUT_REASON,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def _record_failure(
        self,
        db,
        users: UserRepository,
        user: User,
        now,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        attempts = users.increment_failed_logins(user.id)
        self._audit.record(
            db,
            AuditAction.USER_LOGIN_FAILED,
            target_user_id=user.id,
            details={"failed_attempts": attempts},
            ip=ip_address,
            user_agent=user_agent,
        )
        logger.info("login_failed", user_id=user.id, reason="invalid_password", attempts=attempts)

        if attempts < self._policy.max_failed_logins:
            return

        locked_until = now + self._policy.lockout_duration
        db.execute(
            update(User)
            .where(User.id == user.id)
            .values(locked_until=locked_until, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        self._audit.record(
            db,
            AuditAction.USER_LOCKED,
            target_user_id=user.id,
            details={"failed_attempts": attempts, "locked_until": locked_until},
            ip=ip_address,
            user_agent=user_agent,
        )
        logger.warning("account_locked", user_id=user.id, attempts=attempts)


def _invalid_credentials() -> Outcome[SessionGrant]:
    return Outcome.fail(FailureCode.INVALID_CREDENTIALS, "Invalid credentials")
