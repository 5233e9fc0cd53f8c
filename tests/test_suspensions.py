"""
Warden - Suspension Workflow Tests

Tests for suspend, appeal filing and review, manual lift and the expiry
sweep, including the exclusivity guarantee under concurrent suspends.

Run with: pytest tests/test_suspensions.py -v
"""

import threading
from datetime import timedelta

import pytest
from sqlmodel import select

from warden.audit.models import AuditAction
from warden.auth.models import UserStatus
from warden.database import transaction
from warden.errors import FailureCode, StorageFailure
from warden.suspensions import workflow as workflow_module
from warden.suspensions.models import (
    AppealDecision,
    AppealStatus,
    DurationType,
    Suspension,
    SuspensionResolution,
    SuspensionState,
    suspension_state,
)


def suspend(stack, user, admin, duration=DurationType.TEMPORARY, days=14, can_appeal=True):
    return stack.suspensions.suspend(user.id, admin.id, "Terms of service violation", duration, days, can_appeal)


def audited_actions(stack, user):
    return [e.action for e in stack.audit.entries_for_user(user.id)]


# =============================================================================
# SUSPEND
# =============================================================================

class TestSuspend:
    """SuspensionWorkflow.suspend."""

    def test_temporary_suspension(self, stack, test_user, test_admin, reload_user):
        outcome = suspend(stack, test_user, test_admin)

        assert outcome.ok
        suspension = outcome.value
        now = stack.clock.now()
        assert suspension.is_active is True
        assert suspension.suspended_until == now + timedelta(days=14)
        assert suspension.appeal_deadline == now + timedelta(days=7)
        assert suspension_state(suspension) == SuspensionState.ACTIVE_APPEALABLE
        assert reload_user(test_user.id).status == UserStatus.SUSPENDED

    def test_permanent_suspension_has_no_end(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin, DurationType.PERMANENT, days=30, can_appeal=False).unwrap()

        assert suspension.suspended_until is None
        assert suspension.duration_days is None
        assert suspension.appeal_deadline is None
        assert suspension_state(suspension) == SuspensionState.ACTIVE_NON_APPEALABLE

    def test_revokes_all_sessions(self, stack, test_user, test_admin):
        for _ in range(2):
            stack.sessions.create_session(test_user.id)

        suspend(stack, test_user, test_admin).unwrap()

        assert stack.sessions.list_active(test_user.id) == []
        entry = stack.audit.entries_for_user(test_user.id)[-1]
        assert entry.action == AuditAction.USER_SUSPENDED
        assert entry.performed_by_id == test_admin.id
        assert entry.details["sessions_revoked"] == 2

    def test_suspended_user_cannot_log_in(self, stack, test_user, test_admin):
        suspend(stack, test_user, test_admin).unwrap()

        outcome = stack.authenticator.login("user@test.com", "CorrectHorse42!")

        assert outcome.code == FailureCode.ACCOUNT_SUSPENDED

    def test_second_suspension_refused(self, stack, test_user, test_admin):
        suspend(stack, test_user, test_admin).unwrap()

        assert suspend(stack, test_user, test_admin).code == FailureCode.ALREADY_SUSPENDED

    def test_cannot_suspend_self(self, stack, test_admin):
        assert suspend(stack, test_admin, test_admin).code == FailureCode.CANNOT_SUSPEND_SELF

    def test_cannot_suspend_super_admin(self, stack, super_admin, test_admin):
        assert suspend(stack, super_admin, test_admin).code == FailureCode.CANNOT_SUSPEND_PRIVILEGED

    def test_unknown_user(self, stack, test_admin):
        outcome = stack.suspensions.suspend("missing", test_admin.id, "spam", DurationType.INDEFINITE)

        assert outcome.code == FailureCode.NOT_FOUND

    @pytest.mark.parametrize("reason,duration,days", [
        ("", DurationType.TEMPORARY, 3),
        ("   ", DurationType.PERMANENT, None),
        ("spam", DurationType.TEMPORARY, None),
        ("spam", DurationType.TEMPORARY, 0),
    ])
    def test_invalid_input(self, stack, test_user, test_admin, reason, duration, days):
        with pytest.raises(ValueError):
            stack.suspensions.suspend(test_user.id, test_admin.id, reason, duration, days)

    def test_concurrent_suspends_single_active(self, race_stack, make_user):
        """Parallel suspends of one user leave exactly one active suspension."""
        user = make_user("target@test.com", target=race_stack)
        admins = [make_user(f"admin{i}@test.com", target=race_stack) for i in range(4)]
        barrier = threading.Barrier(len(admins))
        results = []
        errors = []

        def worker(admin):
            barrier.wait()
            try:
                results.append(suspend(race_stack, user, admin))
            except StorageFailure as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(a,)) for a in admins]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(1 for r in results if r.ok) == 1
        assert len(results) + len(errors) == len(admins)
        with transaction(race_stack.session_factory) as db:
            active = db.exec(
                select(Suspension).where(Suspension.user_id == user.id, Suspension.is_active == True)  # noqa: E712
            ).all()
        assert len(active) == 1


# =============================================================================
# APPEALS
# =============================================================================

class TestAppeal:
    """Filing and reviewing appeals."""

    def test_file_appeal(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.clock.advance(days=3)

        outcome = stack.suspensions.file_appeal(suspension.id, "It was my brother")

        assert outcome.ok
        assert outcome.value.appeal_status == AppealStatus.PENDING
        assert outcome.value.appealed_at == stack.clock.now()
        assert suspension_state(outcome.value) == SuspensionState.APPEAL_PENDING

    def test_appeal_window_edges(self, stack, test_user, test_admin, make_user):
        """Just before the deadline succeeds; just after fails."""
        early = suspend(stack, test_user, test_admin).unwrap()
        other = make_user("other@test.com")
        late = suspend(stack, other, test_admin).unwrap()

        stack.clock.set(early.appeal_deadline - timedelta(seconds=1))
        assert stack.suspensions.file_appeal(early.id, "please").ok

        stack.clock.set(late.appeal_deadline + timedelta(seconds=1))
        assert stack.suspensions.file_appeal(late.id, "please").code == FailureCode.APPEAL_WINDOW_CLOSED

    def test_appeal_at_deadline_allowed(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.clock.set(suspension.appeal_deadline)

        assert stack.suspensions.file_appeal(suspension.id, "please").ok

    def test_appeal_not_allowed(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin, can_appeal=False).unwrap()

        assert stack.suspensions.file_appeal(suspension.id, "please").code == FailureCode.APPEAL_NOT_ALLOWED

    def test_only_one_appeal(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.file_appeal(suspension.id, "please")

        assert stack.suspensions.file_appeal(suspension.id, "again").code == FailureCode.APPEAL_NOT_ALLOWED

    def test_appeal_on_lifted_suspension(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.manual_lift(suspension.id, test_admin.id, "mistake")

        assert stack.suspensions.file_appeal(suspension.id, "please").code == FailureCode.NOT_ACTIVE

    def test_approve_lifts_suspension(self, stack, test_user, test_admin, reload_user):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.file_appeal(suspension.id, "please")

        outcome = stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.APPROVE)

        assert outcome.ok
        reviewed = outcome.value
        assert reviewed.is_active is False
        assert reviewed.appeal_status == AppealStatus.APPROVED
        assert reviewed.resolution == SuspensionResolution.APPEAL_APPROVED
        assert reviewed.appeal_reviewed_by_id == test_admin.id
        assert reload_user(test_user.id).status == UserStatus.ACTIVE

    def test_deny_keeps_suspension(self, stack, test_user, test_admin, reload_user):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.file_appeal(suspension.id, "please")

        outcome = stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.DENY)

        assert outcome.ok
        assert outcome.value.is_active is True
        assert outcome.value.appeal_status == AppealStatus.DENIED
        assert suspension_state(outcome.value) == SuspensionState.APPEAL_DENIED
        assert reload_user(test_user.id).status == UserStatus.SUSPENDED
        assert audited_actions(stack, test_user)[-1] == AuditAction.APPEAL_DENIED

    def test_review_twice(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.file_appeal(suspension.id, "please")
        stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.DENY)

        outcome = stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.APPROVE)

        assert outcome.code == FailureCode.ALREADY_RESOLVED

    def test_review_without_appeal(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin).unwrap()

        outcome = stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.APPROVE)

        assert outcome.code == FailureCode.NO_PENDING_APPEAL

    def test_full_appeal_scenario(self, stack, test_user, test_admin):
        """Session, suspension, appeal at day 3, approval at day 5, three audit entries."""
        grant = stack.sessions.create_session(test_user.id)
        assert grant.session.expires_at == stack.clock.now() + timedelta(days=30)

        suspension = stack.suspensions.suspend(
            test_user.id, test_admin.id, "Fraud review", DurationType.INDEFINITE, can_appeal=True,
        ).unwrap()
        assert suspension.appeal_deadline == stack.clock.now() + timedelta(days=7)
        assert stack.sessions.refresh(grant.refresh_token).code == FailureCode.SESSION_REVOKED

        stack.clock.advance(days=3)
        appealed = stack.suspensions.file_appeal(suspension.id, "I can explain").unwrap()
        assert appealed.appeal_status == AppealStatus.PENDING

        stack.clock.advance(days=2)
        approved = stack.suspensions.review_appeal(suspension.id, test_admin.id, AppealDecision.APPROVE).unwrap()
        assert approved.is_active is False
        assert approved.appeal_status == AppealStatus.APPROVED

        assert audited_actions(stack, test_user) == [
            AuditAction.USER_SUSPENDED,
            AuditAction.APPEAL_FILED,
            AuditAction.APPEAL_APPROVED,
        ]


# =============================================================================
# LIFT AND EXPIRY
# =============================================================================

class TestLiftAndExpiry:
    """Manual lift and the expiry sweep."""

    def test_manual_lift(self, stack, test_user, test_admin, reload_user):
        suspension = suspend(stack, test_user, test_admin).unwrap()

        outcome = stack.suspensions.manual_lift(suspension.id, test_admin.id, "Resolved by support")

        assert outcome.ok
        assert outcome.value.resolution == SuspensionResolution.LIFTED
        assert outcome.value.lifted_by_id == test_admin.id
        assert suspension_state(outcome.value) == SuspensionState.MANUALLY_LIFTED
        assert reload_user(test_user.id).status == UserStatus.ACTIVE
        assert stack.suspensions.manual_lift(suspension.id, test_admin.id, "again").code == FailureCode.NOT_ACTIVE

    def test_new_suspension_after_lift(self, stack, test_user, test_admin):
        """Exclusivity only covers active suspensions."""
        first = suspend(stack, test_user, test_admin).unwrap()
        stack.suspensions.manual_lift(first.id, test_admin.id, "mistake")

        assert suspend(stack, test_user, test_admin).ok
        assert len(stack.suspensions.history_for_user(test_user.id)) == 2

    def test_sweep_expires_due_suspensions(self, stack, test_user, test_admin, make_user, reload_user):
        due = suspend(stack, test_user, test_admin, days=3).unwrap()
        other = make_user("other@test.com")
        suspend(stack, other, test_admin, days=10).unwrap()
        stack.clock.advance(days=3)

        assert stack.suspensions.expire_sweep() == 1

        expired = stack.suspensions.get(due.id)
        assert expired.is_active is False
        assert expired.resolution == SuspensionResolution.EXPIRED
        assert suspension_state(expired) == SuspensionState.EXPIRED
        assert reload_user(test_user.id).status == UserStatus.ACTIVE
        assert reload_user(other.id).status == UserStatus.SUSPENDED

        entry = stack.audit.entries_for_user(test_user.id)[-1]
        assert entry.action == AuditAction.SUSPENSION_EXPIRED
        assert entry.performed_by_id is None

    def test_sweep_is_idempotent(self, stack, test_user, test_admin):
        suspend(stack, test_user, test_admin, days=1).unwrap()
        stack.clock.advance(days=2)

        assert stack.suspensions.expire_sweep() == 1
        assert stack.suspensions.expire_sweep() == 0
        assert audited_actions(stack, test_user).count(AuditAction.SUSPENSION_EXPIRED) == 1

    def test_sweep_ignores_permanent(self, stack, test_user, test_admin):
        suspend(stack, test_user, test_admin, DurationType.PERMANENT).unwrap()
        stack.clock.advance(days=3650)

        assert stack.suspensions.expire_sweep() == 0

    def test_sweep_drains_every_batch(self, stack, test_admin, make_user, monkeypatch):
        """More due suspensions than one batch holds are all expired in one run."""
        monkeypatch.setattr(workflow_module, "SWEEP_BATCH_SIZE", 2)
        users = [make_user(f"user{i}@test.com") for i in range(5)]
        for user in users:
            suspend(stack, user, test_admin, days=1).unwrap()
        stack.clock.advance(days=2)

        assert stack.suspensions.expire_sweep() == 5
        assert all(stack.suspensions.active_for_user(u.id) is None for u in users)

    def test_backdated_sweep_stamps_given_instant(self, stack, test_user, test_admin):
        """The expiry entry carries the sweep's instant, not the wall clock."""
        suspend(stack, test_user, test_admin, days=3).unwrap()
        when = stack.clock.now() + timedelta(days=3, hours=1)
        stack.clock.advance(days=10)

        assert stack.suspensions.expire_sweep(now=when) == 1

        entry = stack.audit.entries_for_user(test_user.id)[-1]
        assert entry.action == AuditAction.SUSPENSION_EXPIRED
        assert entry.created_at == when

    def test_remaining(self, stack, test_user, test_admin):
        suspension = suspend(stack, test_user, test_admin, days=14).unwrap()
        stack.clock.advance(days=4)

        assert stack.suspensions.remaining(suspension) == timedelta(days=10)
        assert stack.suspensions.remaining(suspension, stack.clock.now() + timedelta(days=20)) == timedelta(0)

    def test_active_for_user(self, stack, test_user, test_admin):
        assert stack.suspensions.active_for_user(test_user.id) is None

        suspension = suspend(stack, test_user, test_admin).unwrap()

        assert stack.suspensions.active_for_user(test_user.id).id == suspension.id
