"""
Warden - Session Management

Server-side sessions with rotating refresh tokens.

Security:
- Each refresh replaces the refresh token; the old value dies in the same
  compare-and-swap that installs the new one, so two concurrent refreshes
  with one token cannot both win
- Presenting a token that was already rotated away is treated as theft:
  the whole session is revoked
- Revocation is terminal and idempotent
- Lookups go through the indexed selector; the secret half is compared
  against its stored hash in constant time
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import and_, delete, or_, update
from sqlmodel import Session as DBSession, select

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth import codec
from warden.auth.models import RefreshTokenHistory, Session, User
from warden.auth.repository import UserRepository
from warden.auth.tokens import InvalidTokenError, create_access_token, verify_access_token
from warden.clock import Clock, SystemClock
from warden.config import SecurityPolicy
from warden.database import SessionFactory, transaction
from warden.errors import FailureCode, InvariantViolation, Outcome
from warden.logging import get_logger


logger = get_logger(__name__)

REUSE_REVOCATION_REASON = "refresh_token_reuse"


@dataclass(frozen=True)
class SessionGrant:
    """A new session plus the only copies of its plaintext tokens."""
    session: Session
    refresh_token: str
    access_token: str


@dataclass(frozen=True)
class RefreshResult:
    """Rotated session, its new access token and its new refresh token."""
    session: Session
    access_token: str
    refresh_token: str


class SessionManager:
    """
    Lifecycle of authenticated sessions.

    Usage:
        sessions = SessionManager(session_factory, audit, policy)
        grant = sessions.create_session(user.id, ip, user_agent, device_id)
        outcome = sessions.refresh(grant.refresh_token)
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger,
        policy: SecurityPolicy = None,
        clock: Clock = None,
        secret_key: Optional[str] = None,
        jwt_algorithm: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._policy = policy or SecurityPolicy()
        self._clock = clock or SystemClock()
        self._secret_key = secret_key
        self._jwt_algorithm = jwt_algorithm

    # ------------------------------------------------------------------
    # Creation and rotation
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: Optional[str] = None,
        db: Optional[DBSession] = None,
    ) -> SessionGrant:
        """
        Create a session for an authenticated user.

        Returns:
            SessionGrant; the plaintext tokens are not stored anywhere
        """
        now = self._clock.now()
        split = codec.issue_split_token()

        with transaction(self._session_factory, db) as db:
            user = UserRepository(db).find_by_id(user_id)
            if user is None:
                raise InvariantViolation(f"Session requested for unknown user {user_id}")

            session = Session(
                user_id=user_id,
                refresh_selector=split.selector,
                refresh_token_hash=codec.hash_secret(split.verifier),
                ip_address=ip_address,
                user_agent=user_agent[:512] if user_agent else None,
                device_id=device_id,
                expires_at=now + self._policy.session_ttl,
                last_used_at=now,
                created_at=now,
            )
            access_token, jti = self._issue_access_token(user, session.id, now)
            session.access_token_id = jti

            db.add(session)
            db.flush()

        logger.info("session_created", session_id=session.id, user_id=user_id)
        return SessionGrant(session=session, refresh_token=split.value, access_token=access_token)

    def refresh(self, refresh_token: str) -> Outcome[RefreshResult]:
        """
        Exchange a refresh token for a new access token and refresh token.

        Failures:
            session_invalid: unknown or malformed token, or a concurrent
                refresh rotated it first
            session_revoked: session revoked (including on reuse detection)
            session_expired: past expires_at
        """
        parsed = codec.parse_split_token(refresh_token)
        if parsed is None:
            return Outcome.fail(FailureCode.SESSION_INVALID, "Malformed refresh token")
        selector, verifier = parsed
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            session = db.exec(
                select(Session).where(Session.refresh_selector == selector)
            ).first()

            if session is None:
                return self._handle_retired_token(db, selector, verifier, now)

            if not codec.matches_hash(verifier, session.refresh_token_hash):
                return Outcome.fail(FailureCode.SESSION_INVALID, "Unknown refresh token")
            if session.is_revoked:
                return Outcome.fail(FailureCode.SESSION_REVOKED, "Session revoked")
            if now >= session.expires_at:
                return Outcome.fail(FailureCode.SESSION_EXPIRED, "Session expired")

            user = UserRepository(db).find_by_id(session.user_id)
            if user is None:
                raise InvariantViolation(f"Session {session.id} belongs to a missing user")

            new_token = codec.issue_split_token()
            access_token, jti = self._issue_access_token(user, session.id, now)
            retired_hash = session.refresh_token_hash
            retired_issued_at = session.last_used_at

            result = db.execute(
                update(Session)
                .where(
                    Session.id == session.id,
                    Session.refresh_selector == selector,
                    Session.is_revoked == False,  # noqa: E712
                )
                .values(
                    refresh_selector=new_token.selector,
                    refresh_token_hash=codec.hash_secret(new_token.verifier),
                    access_token_id=jti,
                    last_used_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.info("refresh_lost_race", session_id=session.id)
                return Outcome.fail(FailureCode.SESSION_INVALID, "Refresh token already rotated")

            db.add(RefreshTokenHistory(
                session_id=session.id,
                selector=selector,
                token_hash=retired_hash,
                issued_at=retired_issued_at,
                retired_at=now,
            ))
            db.flush()
            db.refresh(session)

        logger.info("session_refreshed", session_id=session.id, user_id=session.user_id)
        return Outcome.success(RefreshResult(
            session=session,
            access_token=access_token,
            refresh_token=new_token.value,
        ))

    def _handle_retired_token(
        self,
        db: DBSession,
        selector: str,
        verifier: str,
        now: datetime,
    ) -> Outcome[RefreshResult]:
        retired = db.exec(
            select(RefreshTokenHistory).where(RefreshTokenHistory.selector == selector)
        ).first()
        if retired is None or not codec.matches_hash(verifier, retired.token_hash):
            return Outcome.fail(FailureCode.SESSION_INVALID, "Unknown refresh token")

        # A genuine but stale token: someone kept a copy. Kill the family.
        session = db.get(Session, retired.session_id)
        revoked = self._revoke_where(db, now, REUSE_REVOCATION_REASON, Session.id == retired.session_id)
        self._audit.record(
            db,
            AuditAction.SESSION_REUSE_DETECTED,
            target_user_id=session.user_id if session else None,
            details={
                "session_id": retired.session_id,
                "retired_at": retired.retired_at,
                "sessions_revoked": revoked,
            },
        )
        logger.warning(
            "refresh_token_reuse",
            session_id=retired.session_id,
            user_id=session.user_id if session else None,
        )
        return Outcome.fail(FailureCode.SESSION_REVOKED, "Refresh token reuse detected")

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(
        self,
        session_id: str,
        reason: str,
        performed_by_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Session]:
        """
        Revoke one session. Revoking a revoked session is a successful no-op.

        Failures:
            not_found: no such session
        """
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            session = db.get(Session, session_id)
            if session is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "Session not found")
            if session.is_revoked:
                return Outcome.success(session)

            if self._revoke_where(db, now, reason, Session.id == session_id):
                self._audit.record(
                    db,
                    AuditAction.SESSION_REVOKED,
                    performed_by_id=performed_by_id or session.user_id,
                    target_user_id=session.user_id,
                    details={"session_id": session_id, "reason": reason},
                    ip=ip_address,
                    user_agent=user_agent,
                )
            db.refresh(session)

        logger.info("session_revoked", session_id=session_id, reason=reason)
        return Outcome.success(session)

    def revoke_all_for_user(
        self,
        user_id: str,
        reason: str,
        db: Optional[DBSession] = None,
        performed_by_id: Optional[str] = None,
    ) -> int:
        """
        Revoke every session of a user (password change, suspension, ...).

        With `db` the call joins the caller's transaction and the caller's
        own audit entry covers it. Called on its own it writes a
        session.revoked_all entry.

        Returns:
            Number of sessions revoked by this call
        """
        owns_transaction = db is None
        now = self._clock.now()

        with transaction(self._session_factory, db) as db:
            count = self._revoke_where(db, now, reason, Session.user_id == user_id)
            if owns_transaction and count:
                self._audit.record(
                    db,
                    AuditAction.SESSION_REVOKED_ALL,
                    performed_by_id=performed_by_id,
                    target_user_id=user_id,
                    details={"reason": reason, "sessions_revoked": count},
                )

        logger.info("sessions_revoked_for_user", user_id=user_id, count=count, reason=reason)
        return count

    def _revoke_where(self, db: DBSession, now: datetime, reason: str, *criteria) -> int:
        result = db.execute(
            update(Session)
            .where(*criteria, Session.is_revoked == False)  # noqa: E712
            .values(is_revoked=True, revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_active(self, user_id: str) -> List[Session]:
        """Live sessions of a user, oldest first."""
        now = self._clock.now()
        with transaction(self._session_factory) as db:
            return list(db.exec(
                select(Session)
                .where(
                    Session.user_id == user_id,
                    Session.is_revoked == False,  # noqa: E712
                    Session.expires_at > now,
                )
                .order_by(Session.created_at)
            ).all())

    def authenticate_access(self, access_token: str) -> Outcome[Session]:
        """
        Validate an access token against its server-side session.

        The signature must verify, the session must be live, and the token
        must be the one most recently issued for the session.
        """
        now = self._clock.now()
        try:
            payload = verify_access_token(
                access_token,
                now=now,
                secret_key=self._secret_key,
                algorithm=self._jwt_algorithm,
            )
        except InvalidTokenError:
            return Outcome.fail(FailureCode.SESSION_INVALID, "Invalid access token")

        with transaction(self._session_factory) as db:
            session = db.get(Session, payload.sid)

        if session is None or session.user_id != payload.sub:
            return Outcome.fail(FailureCode.SESSION_INVALID, "Unknown session")
        if session.is_revoked:
            return Outcome.fail(FailureCode.SESSION_REVOKED, "Session revoked")
        if now >= session.expires_at:
            return Outcome.fail(FailureCode.SESSION_EXPIRED, "Session expired")
        if session.access_token_id is None or not codec.constant_time_equals(
            payload.jti, session.access_token_id
        ):
            return Outcome.fail(FailureCode.SESSION_INVALID, "Access token superseded")
        return Outcome.success(session)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, retention: Optional[timedelta] = None) -> int:
        """
        Delete sessions that ended more than `retention` ago.

        Ended means expired, or revoked. Their refresh-token history goes
        with them.

        Returns:
            Number of sessions deleted
        """
        cutoff = self._clock.now() - (retention if retention is not None else self._policy.session_retention)
        finished = or_(
            Session.expires_at < cutoff,
            and_(Session.is_revoked == True, Session.revoked_at < cutoff),  # noqa: E712
        )

        with transaction(self._session_factory) as db:
            session_ids = list(db.exec(select(Session.id).where(finished)).all())
            if not session_ids:
                return 0
            db.execute(
                delete(RefreshTokenHistory)
                .where(RefreshTokenHistory.session_id.in_(session_ids))
                .execution_options(synchronize_session=False)
            )
            db.execute(
                delete(Session)
                .where(Session.id.in_(session_ids))
                .execution_options(synchronize_session=False)
            )

        logger.info("sessions_purged", count=len(session_ids))
        return len(session_ids)

    def _issue_access_token(self, user: User, session_id: str, now: datetime):
        return create_access_token(
            user_id=user.id,
            role=user.role.value,
            session_id=session_id,
            issued_at=now,
            expires_delta=self._policy.access_token_ttl,
            secret_key=self._secret_key,
            algorithm=self._jwt_algorithm,
        )
