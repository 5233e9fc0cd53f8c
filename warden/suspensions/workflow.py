"""
Warden - Suspension Workflow

Administrative suspension and the user's appeal.

    suspend ─► Active(appealable) ──file_appeal──► AppealPending
          │                                         │
          └► Active(non-appealable)      review_appeal(approve) ─► AppealApproved (lifted)
                                         review_appeal(deny)    ─► AppealDenied (still active)

    any active state ──manual_lift──► ManuallyLifted
    any active state with suspended_until <= now ──expire_sweep──► Expired

is_active only goes true at creation and false at lift, expiry or approved
appeal. Every transition is a compare-and-swap on the columns that define
its source state, so a concurrent transition makes the loser fail with
not_active / already_resolved instead of applying twice.
"""

from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import Session as DBSession, select

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth.models import Role, UserStatus
from warden.auth.repository import UserRepository
from warden.auth.sessions import SessionManager
from warden.clock import Clock, SystemClock
from warden.config import SecurityPolicy
from warden.database import SessionFactory, transaction
from warden.errors import FailureCode, Outcome
from warden.logging import get_logger
from warden.suspensions.models import (
    AppealDecision,
    AppealStatus,
    DurationType,
    Suspension,
    SuspensionResolution,
)


logger = get_logger(__name__)

SUSPENSION_REVOCATION_REASON = "account_suspended"
SWEEP_BATCH_SIZE = 500


class SuspensionWorkflow:
    """
    Usage:
        workflow = SuspensionWorkflow(session_factory, audit, sessions, policy)
        outcome = workflow.suspend(user.id, admin.id, "spam", DurationType.TEMPORARY, 14)
        workflow.file_appeal(outcome.value.id, "It was not me")
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

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def suspend(
        self,
        user_id: str,
        suspended_by_id: str,
        reason: str,
        duration_type: DurationType,
        duration_days: Optional[int] = None,
        can_appeal: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Suspension]:
        """
        Suspend a user, revoke their sessions and record it.

        Raises:
            ValueError: blank reason, or a temporary suspension without a
                positive duration_days

        Failures:
            not_found, cannot_suspend_self, cannot_suspend_privileged,
            already_suspended
        """
        duration_type = DurationType(duration_type)
        if not reason or not reason.strip():
            raise ValueError("Suspension reason is required")
        if duration_type == DurationType.TEMPORARY:
            if duration_days is None or duration_days <= 0:
                raise ValueError("Temporary suspensions need a positive duration_days")
        else:
            duration_days = None

        now = self._clock.now()

        with transaction(self._session_factory) as db:
            users = UserRepository(db)
            target = users.find_by_id(user_id, for_update=True)
            if target is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "User not found")
            if user_id == suspended_by_id:
                return Outcome.fail(FailureCode.CANNOT_SUSPEND_SELF, "Admins cannot suspend themselves")
            if target.role == Role.SUPER_ADMIN:
                return Outcome.fail(FailureCode.CANNOT_SUSPEND_PRIVILEGED, "Super admins cannot be suspended")
            if self._find_active(db, user_id) is not None:
                return Outcome.fail(FailureCode.ALREADY_SUSPENDED, "User already has an active suspension")

            suspension = Suspension(
                user_id=user_id,
                suspended_by_id=suspended_by_id,
                reason=reason.strip(),
                duration_type=duration_type,
                duration_days=duration_days,
                suspended_until=now + timedelta(days=duration_days) if duration_days else None,
                can_appeal=can_appeal,
                appeal_deadline=now + self._policy.appeal_window if can_appeal else None,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            db.add(suspension)
            # Partial unique index: a concurrent suspend that slipped past the
            # check above fails here and the whole operation rolls back
            db.flush()

            target.status = UserStatus.SUSPENDED
            users.update(target, now)

            revoked = self._sessions.revoke_all_for_user(user_id, SUSPENSION_REVOCATION_REASON, db=db)

            self._audit.record(
                db,
                AuditAction.USER_SUSPENDED,
                performed_by_id=suspended_by_id,
                target_user_id=user_id,
                details={
                    "suspension_id": suspension.id,
                    "reason": suspension.reason,
                    "duration_type": duration_type.value,
                    "duration_days": duration_days,
                    "suspended_until": suspension.suspended_until,
                    "can_appeal": can_appeal,
                    "appeal_deadline": suspension.appeal_deadline,
                    "sessions_revoked": revoked,
                },
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info(
            "user_suspended",
            user_id=user_id,
            suspension_id=suspension.id,
            suspended_by_id=suspended_by_id,
            sessions_revoked=revoked,
        )
        return Outcome.success(suspension)

    def file_appeal(
        self,
        suspension_id: str,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Suspension]:
        """
        File the suspended user's appeal.

        Allowed only from Active(appealable) and no later than
        appeal_deadline.

        Failures:
            not_found, not_active, appeal_not_allowed, appeal_window_closed
        """
        if not reason or not reason.strip():
            raise ValueError("Appeal reason is required")
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            suspension = db.get(Suspension, suspension_id)
            if suspension is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "Suspension not found")
            if not suspension.is_active:
                return Outcome.fail(FailureCode.NOT_ACTIVE, "Suspension is no longer active")
            if not suspension.can_appeal or suspension.has_appealed:
                return Outcome.fail(FailureCode.APPEAL_NOT_ALLOWED, "Suspension cannot be appealed")
            if suspension.appeal_deadline is None or now > suspension.appeal_deadline:
                return Outcome.fail(FailureCode.APPEAL_WINDOW_CLOSED, "Appeal window has closed")

            swapped = self._swap(
                db,
                suspension,
                [
                    Suspension.is_active == True,  # noqa: E712
                    Suspension.has_appealed == False,  # noqa: E712
                ],
                has_appealed=True,
                appeal_reason=reason.strip(),
                appealed_at=now,
                appeal_status=AppealStatus.PENDING,
                updated_at=now,
            )
            if not swapped:
                return Outcome.fail(FailureCode.APPEAL_NOT_ALLOWED, "Appeal already filed")

            self._audit.record(
                db,
                AuditAction.APPEAL_FILED,
                performed_by_id=suspension.user_id,
                target_user_id=suspension.user_id,
                details={"suspension_id": suspension.id},
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info("appeal_filed", suspension_id=suspension_id, user_id=suspension.user_id)
        return Outcome.success(suspension)

    def review_appeal(
        self,
        suspension_id: str,
        reviewer_id: str,
        decision: AppealDecision,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Suspension]:
        """
        Approve (lift) or deny a pending appeal.

        Failures:
            not_found, not_active, no_pending_appeal, already_resolved
        """
        decision = AppealDecision(decision)
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            suspension = db.get(Suspension, suspension_id)
            if suspension is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "Suspension not found")
            if suspension.has_appealed and suspension.appeal_status in (
                AppealStatus.APPROVED,
                AppealStatus.DENIED,
            ):
                return Outcome.fail(FailureCode.ALREADY_RESOLVED, "Appeal already reviewed")
            if not suspension.is_active:
                return Outcome.fail(FailureCode.NOT_ACTIVE, "Suspension is no longer active")
            if not suspension.has_appealed:
                return Outcome.fail(FailureCode.NO_PENDING_APPEAL, "No appeal to review")

            pending = [
                Suspension.is_active == True,  # noqa: E712
                Suspension.appeal_status == AppealStatus.PENDING,
            ]
            review = dict(
                appeal_reviewed_by_id=reviewer_id,
                appeal_reviewed_at=now,
                updated_at=now,
            )

            if decision == AppealDecision.APPROVE:
                swapped = self._swap(
                    db,
                    suspension,
                    pending,
                    appeal_status=AppealStatus.APPROVED,
                    is_active=False,
                    resolution=SuspensionResolution.APPEAL_APPROVED,
                    resolved_at=now,
                    **review,
                )
                action = AuditAction.APPEAL_APPROVED
            else:
                swapped = self._swap(
                    db,
                    suspension,
                    pending,
                    appeal_status=AppealStatus.DENIED,
                    **review,
                )
                action = AuditAction.APPEAL_DENIED

            if not swapped:
                return Outcome.fail(FailureCode.ALREADY_RESOLVED, "Appeal already reviewed")

            if decision == AppealDecision.APPROVE:
                self._restore_user(db, suspension.user_id, now)

            self._audit.record(
                db,
                action,
                performed_by_id=reviewer_id,
                target_user_id=suspension.user_id,
                details={"suspension_id": suspension.id, "decision": decision.value},
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info(
            "appeal_reviewed",
            suspension_id=suspension_id,
            reviewer_id=reviewer_id,
            decision=decision.value,
        )
        return Outcome.success(suspension)

    def manual_lift(
        self,
        suspension_id: str,
        lifted_by_id: str,
        reason: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Outcome[Suspension]:
        """
        Admin override: end an active suspension from any active state.

        Failures:
            not_found, not_active
        """
        now = self._clock.now()

        with transaction(self._session_factory) as db:
            suspension = db.get(Suspension, suspension_id)
            if suspension is None:
                return Outcome.fail(FailureCode.NOT_FOUND, "Suspension not found")
            if not suspension.is_active:
                return Outcome.fail(FailureCode.NOT_ACTIVE, "Suspension is no longer active")

            swapped = self._swap(
                db,
                suspension,
                [Suspension.is_active == True],  # noqa: E712
                is_active=False,
                resolution=SuspensionResolution.LIFTED,
                resolved_at=now,
                lifted_by_id=lifted_by_id,
                lift_reason=reason,
                updated_at=now,
            )
            if not swapped:
                return Outcome.fail(FailureCode.NOT_ACTIVE, "Suspension is no longer active")

            self._restore_user(db, suspension.user_id, now)
            self._audit.record(
                db,
                AuditAction.SUSPENSION_LIFTED,
                performed_by_id=lifted_by_id,
                target_user_id=suspension.user_id,
                details={"suspension_id": suspension.id, "reason": reason},
                ip=ip_address,
                user_agent=user_agent,
            )

        logger.info("suspension_lifted", suspension_id=suspension_id, lifted_by_id=lifted_by_id)
        return Outcome.success(suspension)

    def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """
        Lift every active temporary suspension whose end has passed.

        Due rows are fetched in batches until none is left. System-initiated:
        audit entries carry no performer and are stamped with `now`. Each row
        is handled in its own short transaction, so the sweep never holds
        broad locks, and a row already handled (by this sweep running twice
        or by a concurrent lift) is skipped.

        Returns:
            Number of suspensions expired by this run
        """
        now = now or self._clock.now()

        expired = 0
        while True:
            with transaction(self._session_factory) as db:
                due = list(db.exec(
                    select(Suspension.id)
                    .where(
                        Suspension.is_active == True,  # noqa: E712
                        Suspension.suspended_until.is_not(None),
                        Suspension.suspended_until <= now,
                    )
                    .order_by(Suspension.suspended_until)
                    .limit(SWEEP_BATCH_SIZE)
                ).all())
            if not due:
                break

            batch_expired = sum(1 for suspension_id in due if self._expire_one(suspension_id, now))
            expired += batch_expired
            if batch_expired == 0:
                # Every row was taken by someone else; they no longer match
                break

        if expired:
            logger.info("suspensions_expired", count=expired)
        return expired

    def _expire_one(self, suspension_id: str, now: datetime) -> bool:
        with transaction(self._session_factory) as db:
            suspension = db.get(Suspension, suspension_id)
            if suspension is None:
                return False
            swapped = self._swap(
                db,
                suspension,
                [
                    Suspension.is_active == True,  # noqa: E712
                    Suspension.suspended_until <= now,
                ],
                is_active=False,
                resolution=SuspensionResolution.EXPIRED,
                resolved_at=now,
                updated_at=now,
            )
            if not swapped:
                return False

            self._restore_user(db, suspension.user_id, now)
            self._audit.record(
                db,
                AuditAction.SUSPENSION_EXPIRED,
                performed_by_id=None,
                target_user_id=suspension.user_id,
                details={
                    "suspension_id": suspension.id,
                    "suspended_until": suspension.suspended_until,
                },
                created_at=now,
            )

        logger.info("suspension_expired", suspension_id=suspension_id, user_id=suspension.user_id)
        return True

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, suspension_id: str) -> Optional[Suspension]:
        with transaction(self._session_factory) as db:
            return db.get(Suspension, suspension_id)

    def active_for_user(self, user_id: str) -> Optional[Suspension]:
        with transaction(self._session_factory) as db:
            return self._find_active(db, user_id)

    def history_for_user(self, user_id: str) -> List[Suspension]:
        """All suspensions of a user, newest first."""
        with transaction(self._session_factory) as db:
            return list(db.exec(
                select(Suspension)
                .where(Suspension.user_id == user_id)
                .order_by(Suspension.created_at.desc())
            ).all())

    def remaining(self, suspension: Suspension, now: Optional[datetime] = None) -> Optional[timedelta]:
        """
        Time left on a temporary suspension.

        Returns:
            None for permanent/indefinite suspensions, zero once due
        """
        if suspension.suspended_until is None:
            return None
        left = suspension.suspended_until - (now or self._clock.now())
        return max(left, timedelta(0))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _find_active(self, db: DBSession, user_id: str) -> Optional[Suspension]:
        return db.exec(
            select(Suspension).where(
                Suspension.user_id == user_id,
                Suspension.is_active == True,  # noqa: E712
            )
        ).first()

    def _swap(self, db: DBSession, suspension: Suspension, expected: list, **values) -> bool:
        """Apply `values` only if the row still matches `expected`; reload it."""
        result = db.execute(
            update(Suspension)
            .where(Suspension.id == suspension.id, *expected)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        db.refresh(suspension)
        return result.rowcount == 1

    def _restore_user(self, db: DBSession, user_id: str, now: datetime) -> None:
        # Another active suspension keeps the account suspended
        if self._find_active(db, user_id) is not None:
            return
        users = UserRepository(db)
        user = users.find_by_id(user_id)
        if user is not None and user.status == UserStatus.SUSPENDED:
            user.status = UserStatus.ACTIVE
            users.update(user, now)
