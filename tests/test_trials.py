"""
Warden - Trial Expiry Tests

Tests for the trial sweep: status change, tenant cascade, session
revocation and audit.

Run with: pytest tests/test_trials.py
"""

import pytest
from datetime import timedelta

from warden.audit.models import AuditAction
from warden.auth import trials as trials_module
from warden.auth.models import Role, UserStatus
from warden.errors import FailureCode


@pytest.fixture
def trial_admin(stack, make_user):
    """Tenant admin whose trial ended a day ago."""
    return make_user(
        "owner@test.com",
        role=Role.TENANT_ADMIN,
        tenant_id="tenant-1",
        trial_start_date=stack.clock.now() - timedelta(days=15),
        trial_end_date=stack.clock.now() - timedelta(days=1),
    )


# =============================================================================
# TRIAL SWEEP TESTS
# =============================================================================

class TestTrialSweep:
    """TrialExpiry.expire_sweep behaviour."""

    def test_ended_trial_expires_account(self, stack, trial_admin, reload_user):
        """The trial holder moves to trial_expired and is audited without a performer."""
        expired = stack.trials.expire_sweep()

        assert expired == 1
        assert reload_user(trial_admin.id).status == UserStatus.TRIAL_EXPIRED

        entry = stack.audit.entries_for_user(trial_admin.id)[-1]
        assert entry.action == AuditAction.USER_TRIAL_EXPIRED
        assert entry.performed_by_id is None
        assert entry.created_at == stack.clock.now()
        assert entry.details["tenant_id"] == "tenant-1"

    def test_running_trial_untouched(self, stack, make_user, reload_user):
        """Trials that have not ended yet are left alone."""
        user = make_user(
            "fresh@test.com",
            role=Role.TENANT_ADMIN,
            trial_end_date=stack.clock.now() + timedelta(hours=1),
        )

        assert stack.trials.expire_sweep() == 0
        assert reload_user(user.id).status == UserStatus.ACTIVE

    def test_sessions_revoked(self, stack, make_user, trial_admin):
        """Live sessions of the expired account stop working."""
        user = make_user("member@test.com", tenant_id="tenant-1")
        grant = stack.authenticator.login("member@test.com", "CorrectHorse42!").unwrap()

        stack.trials.expire_sweep()

        assert stack.sessions.refresh(grant.refresh_token).code == FailureCode.SESSION_REVOKED
        assert stack.sessions.list_active(user.id) == []

    def test_tenant_users_follow_the_trial(self, stack, make_user, trial_admin, reload_user):
        """Other active users of the tenant expire with it; other tenants do not."""
        member = make_user("member@test.com", tenant_id="tenant-1")
        suspended = make_user("banned@test.com", tenant_id="tenant-1", status=UserStatus.SUSPENDED)
        outsider = make_user("other@test.com", tenant_id="tenant-2")

        stack.trials.expire_sweep()

        assert reload_user(member.id).status == UserStatus.TRIAL_EXPIRED
        assert reload_user(suspended.id).status == UserStatus.SUSPENDED
        assert reload_user(outsider.id).status == UserStatus.ACTIVE

        entry = stack.audit.entries_for_user(trial_admin.id)[-1]
        assert entry.details["tenant_users_expired"] == [member.id]

    def test_expired_account_cannot_log_in(self, stack, trial_admin):
        stack.trials.expire_sweep()

        outcome = stack.authenticator.login("owner@test.com", "CorrectHorse42!")

        assert outcome.code == FailureCode.ACCOUNT_TRIAL_EXPIRED

    def test_sweep_is_idempotent(self, stack, trial_admin):
        """A second run finds nothing and writes no second entry."""
        assert stack.trials.expire_sweep() == 1
        assert stack.trials.expire_sweep() == 0

        actions = [e.action for e in stack.audit.entries_for_user(trial_admin.id)]
        assert actions.count(AuditAction.USER_TRIAL_EXPIRED) == 1

    def test_sweep_drains_every_batch(self, stack, make_user, monkeypatch):
        """More due accounts than one batch holds are all expired in one run."""
        monkeypatch.setattr(trials_module, "TRIAL_SWEEP_BATCH_SIZE", 2)
        for i in range(5):
            make_user(
                f"owner{i}@test.com",
                role=Role.TENANT_ADMIN,
                trial_end_date=stack.clock.now() - timedelta(days=1),
            )

        assert stack.trials.expire_sweep() == 5

    def test_backdated_sweep_uses_given_instant(self, stack, trial_admin):
        """Entries are stamped with the instant the sweep evaluated."""
        when = stack.clock.now() - timedelta(hours=2)

        stack.trials.expire_sweep(now=when)

        entry = stack.audit.entries_for_user(trial_admin.id)[-1]
        assert entry.created_at == when
