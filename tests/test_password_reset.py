"""
Warden - Password Reset Tests

Tests for reset issue/redeem and all-or-nothing redemption.

Run with: pytest tests/test_password_reset.py -v
"""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from warden.audit.models import AuditAction
from warden.auth.models import PasswordReset
from warden.auth.password import hash_password, verify_password
from warden.auth.repository import UserRepository
from warden.database import transaction
from warden.errors import FailureCode, StorageFailure


NEW_PASSWORD = "BrandNewPassword99"


@pytest.fixture
def new_hash():
    return hash_password(NEW_PASSWORD, work_factor=4)


def load_resets(stack):
    with transaction(stack.session_factory) as db:
        return db.exec(select(PasswordReset).order_by(PasswordReset.created_at)).all()


# =============================================================================
# ISSUE
# =============================================================================

class TestIssueReset:
    """PasswordResetManager.issue and request_for_email."""

    def test_issue(self, stack, test_user):
        issued = stack.resets.issue(test_user.id).unwrap()

        assert issued.record.expires_at == stack.clock.now() + timedelta(hours=1)
        assert issued.record.token in issued.token
        user_id, notification = stack.notifier.sent[-1]
        assert user_id == test_user.id
        assert notification.template == "password_reset"

    def test_new_reset_supersedes_old(self, stack, test_user, new_hash):
        first = stack.resets.issue(test_user.id).unwrap()
        second = stack.resets.issue(test_user.id).unwrap()

        assert stack.resets.redeem(first.token, new_hash).code == FailureCode.EXPIRED
        assert stack.resets.redeem(second.token, new_hash).ok

    def test_request_for_unknown_email_is_silent(self, stack):
        """No token, no notification and no error for an unknown address."""
        assert stack.resets.request_for_email("ghost@test.com") is None
        assert load_resets(stack) == []
        assert stack.notifier.sent == []

    def test_request_for_known_email(self, stack, test_user):
        assert stack.resets.request_for_email("User@Test.com") is None

        resets = load_resets(stack)
        assert len(resets) == 1
        assert resets[0].user_id == test_user.id


# =============================================================================
# REDEEM
# =============================================================================

class TestRedeem:
    """PasswordResetManager.redeem."""

    def test_redeem_changes_password_and_revokes_sessions(self, stack, test_user, new_hash, reload_user):
        for _ in range(2):
            stack.sessions.create_session(test_user.id)
        issued = stack.resets.issue(test_user.id).unwrap()

        outcome = stack.resets.redeem(issued.token, new_hash)

        assert outcome.ok
        user = reload_user(test_user.id)
        assert verify_password(NEW_PASSWORD, user.password_hash)
        assert user.password_changed_at == stack.clock.now()
        assert stack.sessions.list_active(test_user.id) == []
        assert load_resets(stack)[0].used_at == stack.clock.now()

        entry = stack.audit.entries_for_user(test_user.id)[-1]
        assert entry.action == AuditAction.USER_PASSWORD_RESET
        assert entry.details["sessions_revoked"] == 2

    def test_redeem_clears_lockout(self, stack, test_user, new_hash, reload_user):
        for _ in range(stack.policy.max_failed_logins):
            stack.authenticator.login("user@test.com", "wrong-password")
        issued = stack.resets.issue(test_user.id).unwrap()

        stack.resets.redeem(issued.token, new_hash).unwrap()

        assert reload_user(test_user.id).locked_until is None
        assert stack.authenticator.login("user@test.com", NEW_PASSWORD).ok

    def test_single_use(self, stack, test_user, new_hash):
        issued = stack.resets.issue(test_user.id).unwrap()
        stack.resets.redeem(issued.token, new_hash)

        assert stack.resets.redeem(issued.token, new_hash).code == FailureCode.ALREADY_USED

    def test_expired(self, stack, test_user, new_hash):
        issued = stack.resets.issue(test_user.id).unwrap()
        stack.clock.advance(hours=1)

        assert stack.resets.redeem(issued.token, new_hash).code == FailureCode.EXPIRED

    @pytest.mark.parametrize("token", ["", "bogus", "sel.secret"])
    def test_unknown_token(self, stack, test_user, new_hash, token):
        stack.resets.issue(test_user.id)

        assert stack.resets.redeem(token, new_hash).code == FailureCode.NOT_FOUND

    def test_wrong_secret_half(self, stack, test_user, new_hash):
        issued = stack.resets.issue(test_user.id).unwrap()

        outcome = stack.resets.redeem(issued.record.token + ".guessed", new_hash)

        assert outcome.code == FailureCode.NOT_FOUND


# =============================================================================
# ATOMICITY
# =============================================================================

class TestRedeemAtomicity:
    """Mark-used, password update and session revocation happen together or not at all."""

    @pytest.fixture
    def prepared(self, stack, test_user, reload_user):
        stack.sessions.create_session(test_user.id)
        stack.sessions.create_session(test_user.id)
        issued = stack.resets.issue(test_user.id).unwrap()
        return issued, reload_user(test_user.id).password_hash

    def assert_untouched(self, stack, test_user, old_hash, reload_user):
        assert load_resets(stack)[0].used_at is None
        assert reload_user(test_user.id).password_hash == old_hash
        assert len(stack.sessions.list_active(test_user.id)) == 2
        actions = [e.action for e in stack.audit.entries_for_user(test_user.id)]
        assert AuditAction.USER_PASSWORD_RESET not in actions

    def test_failure_updating_password(self, stack, test_user, new_hash, prepared, reload_user, monkeypatch):
        """Failure after the token was marked used."""
        issued, old_hash = prepared

        def boom(self, user, now=None):
            raise RuntimeError("disk full")

        monkeypatch.setattr(UserRepository, "update", boom)
        with pytest.raises(RuntimeError):
            stack.resets.redeem(issued.token, new_hash)
        monkeypatch.undo()

        self.assert_untouched(stack, test_user, old_hash, reload_user)

    def test_failure_revoking_sessions(self, stack, test_user, new_hash, prepared, reload_user, monkeypatch):
        """Failure after the password was replaced."""
        issued, old_hash = prepared

        def boom(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(stack.sessions, "revoke_all_for_user", boom)
        with pytest.raises(RuntimeError):
            stack.resets.redeem(issued.token, new_hash)
        monkeypatch.undo()

        self.assert_untouched(stack, test_user, old_hash, reload_user)

    def test_failure_writing_audit(self, stack, test_user, new_hash, prepared, reload_user, monkeypatch):
        """Failure after sessions were revoked."""
        issued, old_hash = prepared

        def boom(*args, **kwargs):
            raise OperationalError("INSERT INTO audit_logs", {}, Exception("database is locked"))

        monkeypatch.setattr(stack.audit, "record", boom)
        with pytest.raises(StorageFailure):
            stack.resets.redeem(issued.token, new_hash)
        monkeypatch.undo()

        self.assert_untouched(stack, test_user, old_hash, reload_user)

    def test_token_still_redeemable_after_failure(self, stack, test_user, new_hash, prepared, monkeypatch):
        """A rolled-back attempt leaves the token usable."""
        issued, _ = prepared

        def boom(*args, **kwargs):
            raise RuntimeError("transient")

        monkeypatch.setattr(stack.sessions, "revoke_all_for_user", boom)
        with pytest.raises(RuntimeError):
            stack.resets.redeem(issued.token, new_hash)
        monkeypatch.undo()

        assert stack.resets.redeem(issued.token, new_hash).ok
        assert stack.sessions.list_active(test_user.id) == []
