"""
Warden - Verification Tokens

Typed, attempt-limited, single-use tokens for email verification, phone
verification and 2FA challenges.

Lifecycle per token: Issued -> (attempted)* -> Used | Expired | Exhausted.
Expired and exhausted are derived at check time from expires_at,
superseded_at and attempts; only used_at is a stored terminal marker.

Security:
- Every verify call spends an attempt before anything else is checked,
  so probing with malformed proofs still counts
- The counter is incremented inside the database, never read-modify-write
- Once the limit is reached no proof, right or wrong, is accepted
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import update
from sqlmodel import Session as DBSession, select

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth import codec
from warden.auth.models import UserStatus, VerificationToken, VerificationType
from warden.auth.repository import UserRepository
from warden.clock import Clock, SystemClock
from warden.config import SecurityPolicy
from warden.database import SessionFactory, transaction
from warden.errors import FailureCode, Outcome
from warden.logging import get_logger
from warden.notifications import LoggingNotificationSender, Notification, NotificationSender, dispatch


logger = get_logger(__name__)

NUMERIC_CODE_TYPES = frozenset({VerificationType.PHONE_VERIFY, VerificationType.TWO_FACTOR})


@dataclass(frozen=True)
class IssuedVerification:
    """
    Attributes:
        record: The stored token row
        token: Public handle the client sends back with the proof
        proof: Secret delivered out of band (code or link secret)
    """
    record: VerificationToken
    token: str
    proof: str


class VerificationManager:
    """
    Usage:
        verifications = VerificationManager(session_factory, audit, policy)
        issued = verifications.issue(user.id, VerificationType.EMAIL_VERIFY).unwrap()
        outcome = verifications.verify(issued.token, proof_from_user)
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger,
        policy: SecurityPolicy = None,
        clock: Clock = None,
        notifier: NotificationSender = None,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._policy = policy or SecurityPolicy()
        self._clock = clock or SystemClock()
        self._notifier = notifier or LoggingNotificationSender()

    def issue(
        self,
        user_id: str,
        type: VerificationType,
        payload: Optional[Any] = None,
        ttl: Optional[timedelta] = None,
    ) -> Outcome[IssuedVerification]:
        """
        Issue a token, superseding any unused token of the same type.

        At most one live token exists per (user, type).

        Failures:
            not_found: unknown user
        """
        type = VerificationType(type)
        now = self._clock.now()
        proof = (
            codec.generate_numeric_code()
            if type in NUMERIC_CODE_TYPES
            else codec.generate()
        )

        with transaction(self._session_factory) as db:
            # Row lock on the user serialises concurrent issues for them
            user = UserRepository(db).find_by_id(user_id, for_update=True)
            if user is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "User not found")

            superseded = db.execute(
                update(VerificationToken)
                .where(
                    VerificationToken.user_id == user_id,
                    VerificationToken.type == type,
                    VerificationToken.used_at.is_(None),
                    VerificationToken.superseded_at.is_(None),
                )
                .values(superseded_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount

            record = VerificationToken(
                token=codec.generate(codec.SELECTOR_BYTES),
                proof_hash=codec.hash_secret(proof),
                user_id=user_id,
                type=type,
                data=payload,
                expires_at=now + (ttl or self._policy.verification_token_ttl),
                attempts=0,
                created_at=now,
            )
            db.add(record)
            db.flush()

            self._audit.record(
                db,
                AuditAction.VERIFICATION_ISSUED,
                performed_by_id=user_id,
                target_user_id=user_id,
                details={
                    "verification_id": record.id,
                    "type": type.value,
                    "superseded": superseded,
                },
            )

        issued = IssuedVerification(record=record, token=record.token, proof=proof)
        dispatch(self._notifier, user, Notification(
            template=type.value,
            channel="sms" if type == VerificationType.PHONE_VERIFY else "email",
            context={"token": issued.token, "proof": proof, "expires_at": record.expires_at.isoformat()},
        ))
        logger.info("verification_issued", user_id=user_id, type=type.value, superseded=superseded)
        return Outcome.success(issued)

    def verify(self, token: str, candidate_proof: Optional[str]) -> Outcome[Any]:
        """
        Check a proof against a token.

        Returns:
            The token's payload on success

        Failures:
            not_found, already_used, attempts_exceeded, expired, proof_mismatch
        """
        now = self._clock.now()
        limit = self._policy.max_verification_attempts

        with transaction(self._session_factory) as db:
            attempts = self._spend_attempt(db, token)
            if attempts is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "Verification token not found")

            record = db.exec(
                select(VerificationToken).where(VerificationToken.token == token)
            ).one()
            db.refresh(record)

            if record.used_at is not None:
                return self._reject(db, record, FailureCode.ALREADY_USED, "Token already used")
            if attempts - 1 >= limit:
                return self._reject(db, record, FailureCode.ATTEMPTS_EXCEEDED, "Too many attempts")
            if record.superseded_at is not None:
                return self._reject(db, record, FailureCode.EXPIRED, "Token superseded by a newer one")
            if now >= record.expires_at:
                return self._reject(db, record, FailureCode.EXPIRED, "Token expired")

            proof_ok = isinstance(candidate_proof, str) and codec.matches_hash(
                candidate_proof, record.proof_hash
            )
            if not proof_ok:
                if attempts >= limit:
                    return self._reject(db, record, FailureCode.ATTEMPTS_EXCEEDED, "Too many attempts")
                return self._reject(db, record, FailureCode.PROOF_MISMATCH, "Proof does not match")

            consumed = db.execute(
                update(VerificationToken)
                .where(VerificationToken.id == record.id, VerificationToken.used_at.is_(None))
                .values(used_at=now)
                .execution_options(synchronize_session=False)
            ).rowcount
            if consumed != 1:
                return self._reject(db, record, FailureCode.ALREADY_USED, "Token already used")

            action = self._apply_side_effects(db, record, now)
            self._audit.record(
                db,
                action,
                performed_by_id=record.user_id,
                target_user_id=record.user_id,
                details={
                    "verification_id": record.id,
                    "type": record.type.value,
                    "attempts": attempts,
                },
            )
            payload = record.data

        logger.info("verification_succeeded", user_id=record.user_id, type=record.type.value)
        return Outcome.success(payload)

    def _spend_attempt(self, db: DBSession, token: str) -> Optional[int]:
        """Increment attempts in the database; None if the token is unknown."""
        if not isinstance(token, str) or not token:
            return None
        result = db.execute(
            update(VerificationToken)
            .where(VerificationToken.token == token)
            .values(attempts=VerificationToken.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return db.exec(
            select(VerificationToken.attempts).where(VerificationToken.token == token)
        ).one()

    def _reject(
        self,
        db: DBSession,
        record: VerificationToken,
        code: FailureCode,
        message: str,
    ) -> Outcome[Any]:
        # The failed attempt is recorded and committed with the counter
        self._audit.record(
            db,
            AuditAction.VERIFICATION_FAILED,
            target_user_id=record.user_id,
            details={
                "verification_id": record.id,
                "type": record.type.value,
                "reason": code.value,
            },
        )
        logger.info("verification_failed", user_id=record.user_id, reason=code.value)
        return Outcome.fail(code, message)

    def _apply_side_effects(self, db: DBSession, record: VerificationToken, now: datetime) -> AuditAction:
        if record.type != VerificationType.EMAIL_VERIFY:
            return AuditAction.VERIFICATION_SUCCEEDED

        users = UserRepository(db)
        user = users.find_by_id(record.user_id)
        user.email_verified_at = now
        if user.status == UserStatus.PENDING_VERIFICATION:
            user.status = UserStatus.ACTIVE
        users.update(user, now)
        return AuditAction.USER_EMAIL_VERIFIED
