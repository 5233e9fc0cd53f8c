"""
Warden - Trial Expiry

Tenant accounts start on a trial with an end date. Once it has passed, the
trial holder and the other active accounts of the same tenant move to
trial_expired: their sessions are revoked and login is refused until an
administrator reactivates them.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import update
from sqlmodel import select

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction
from warden.auth.models import User, UserStatus
from warden.auth.sessions import SessionManager
from warden.clock import Clock, SystemClock
from warden.database import SessionFactory, transaction
from warden.logging import get_logger


logger = get_logger(__name__)

TRIAL_EXPIRED_REASON = "trial_expired"
TRIAL_SWEEP_BATCH_SIZE = 500


def trial_has_ended(user: User, now: datetime) -> bool:
    return user.trial_end_date is not None and user.trial_end_date < now


class TrialExpiry:
    """
    Usage:
        trials = TrialExpiry(session_factory, audit, sessions)
        expired = trials.expire_sweep()  # from cron
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        audit: AuditLogger,
        sessions: SessionManager,
        clock: Clock = None,
    ):
        self._session_factory = session_factory
        self._audit = audit
        self._sessions = sessions
        self._clock = clock or SystemClock()

    def expire_sweep(self, now: Optional[datetime] = None) -> int:
        """
        Expire every active account whose trial ended before `now`.

        Each account is handled in its own transaction with a status
        compare-and-swap, so overlapping runs expire it once.

        Returns:
            Number of trial accounts expired by this run
        """
        now = now or self._clock.now()

        expired = 0
        while True:
            with transaction(self._session_factory) as db:
                due = list(db.exec(
                    select(User.id)
                    .where(
                        User.status == UserStatus.ACTIVE,
                        User.trial_end_date.is_not(None),
                        User.trial_end_date < now,
                    )
                    .order_by(User.trial_end_date)
                    .limit(TRIAL_SWEEP_BATCH_SIZE)
                ).all())
            if not due:
                break

            batch_expired = sum(1 for user_id in due if self._expire_one(user_id, now))
            expired += batch_expired
            if batch_expired == 0:
                break

        if expired:
            logger.info("trials_expired", count=expired)
        return expired

    def _expire_one(self, user_id: str, now: datetime) -> bool:
        with transaction(self._session_factory) as db:
            result = db.execute(
                update(User)
                .where(
                    User.id == user_id,
                    User.status == UserStatus.ACTIVE,
                    User.trial_end_date < now,
                )
                .values(status=UserStatus.TRIAL_EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False

            user = db.get(User, user_id)
            db.refresh(user)
            tenant_users = self._expire_tenant_users(db, user, now)

            revoked = 0
            for affected_id in [user.id, *tenant_users]:
                revoked += self._sessions.revoke_all_for_user(affected_id, TRIAL_EXPIRED_REASON, db=db)

            self._audit.record(
                db,
                AuditAction.USER_TRIAL_EXPIRED,
                performed_by_id=None,
                target_user_id=user.id,
                details={
                    "trial_end_date": user.trial_end_date,
                    "tenant_id": user.tenant_id,
                    "tenant_users_expired": tenant_users,
                    "sessions_revoked": revoked,
                },
                created_at=now,
            )

        logger.info("trial_expired", user_id=user_id, tenant_users=len(tenant_users))
        return True

    def _expire_tenant_users(self, db, user: User, now: datetime) -> List[str]:
        if user.tenant_id is None:
            return []
        ids = list(db.exec(
            select(User.id).where(
                User.tenant_id == user.tenant_id,
                User.id != user.id,
                User.status == UserStatus.ACTIVE,
            )
        ).all())
        if ids:
            db.execute(
                update(User)
                .where(User.id.in_(ids), User.status == UserStatus.ACTIVE)
                .values(status=UserStatus.TRIAL_EXPIRED, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return ids
