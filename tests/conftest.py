"""
Warden - Test Configuration

Pytest fixtures for the security workflows.
Provides test databases, a controllable clock, the managers and users.
"""

from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlmodel import SQLModel

from warden.audit.logger import AuditLogger
from warden.auth.authenticator import Authenticator
from warden.auth.models import Role, User, UserStatus
from warden.auth.password import hash_password
from warden.auth.password_reset import PasswordResetManager
from warden.auth.repository import UserRepository
from warden.auth.sessions import SessionManager
from warden.auth.trials import TrialExpiry
from warden.auth.verification import VerificationManager
from warden.config import SecurityPolicy
from warden.database import get_engine, get_session_factory, init_db, transaction
from warden.notifications import RecordingNotificationSender
from warden.suspensions.workflow import SuspensionWorkflow


# Test database URL (in-memory SQLite)
TEST_DATABASE_URL = "sqlite://"

TEST_SECRET_KEY = "test-secret-key-not-for-production"

# bcrypt minimum; keeps the suite fast
TEST_WORK_FACTOR = 4

USER_PASSWORD = "CorrectHorse42!"

START = datetime(2024, 3, 1, 9, 0, 0)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current

    def set(self, when: datetime) -> datetime:
        self.current = when
        return self.current


def build_stack(engine, clock, policy=None) -> SimpleNamespace:
    """Wire every manager against one engine, clock and policy."""
    policy = policy or SecurityPolicy()
    session_factory = get_session_factory(engine)
    notifier = RecordingNotificationSender()
    audit = AuditLogger(session_factory, clock=clock)
    sessions = SessionManager(
        session_factory,
        audit,
        policy,
        clock,
        secret_key=TEST_SECRET_KEY,
        jwt_algorithm="HS256",
    )
    return SimpleNamespace(
        engine=engine,
        clock=clock,
        policy=policy,
        session_factory=session_factory,
        notifier=notifier,
        audit=audit,
        sessions=sessions,
        verifications=VerificationManager(session_factory, audit, policy, clock, notifier),
        resets=PasswordResetManager(session_factory, audit, sessions, policy, clock, notifier),
        authenticator=Authenticator(session_factory, audit, sessions, policy, clock),
        suspensions=SuspensionWorkflow(session_factory, audit, sessions, policy, clock),
        trials=TrialExpiry(session_factory, audit, sessions, clock),
    )


def add_user(
    session_factory,
    email: str,
    role: Role = Role.TENANT_USER,
    status: UserStatus = UserStatus.ACTIVE,
    password: str = USER_PASSWORD,
    now: datetime = START,
    **fields,
) -> User:
    with transaction(session_factory) as db:
        return UserRepository(db).add(User(
            email=email,
            password_hash=hash_password(password, work_factor=TEST_WORK_FACTOR),
            role=role,
            status=status,
            created_at=now,
            updated_at=now,
            **fields,
        ))


def load_user(session_factory, user_id: str) -> User:
    with transaction(session_factory) as db:
        return UserRepository(db).find_by_id(user_id)


@pytest.fixture(scope="function")
def test_engine():
    """Create a fresh test database engine for each test."""
    engine = get_engine(TEST_DATABASE_URL)
    init_db(engine)

    yield engine

    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def file_engine(tmp_path):
    """File-backed SQLite engine; needed when several threads write at once."""
    engine = get_engine(f"sqlite:///{tmp_path / 'warden-race.db'}")
    init_db(engine)

    yield engine

    engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def policy() -> SecurityPolicy:
    return SecurityPolicy()


@pytest.fixture
def stack(test_engine, clock, policy) -> SimpleNamespace:
    return build_stack(test_engine, clock, policy)


@pytest.fixture
def race_stack(file_engine, clock, policy) -> SimpleNamespace:
    """Managers over the file-backed engine."""
    return build_stack(file_engine, clock, policy)


@pytest.fixture
def make_user(stack):
    """Factory: make_user(email, role=..., status=..., <User fields>, target=stack)."""
    def factory(email, target=None, **kwargs):
        return add_user((target or stack).session_factory, email, **kwargs)
    return factory


@pytest.fixture
def reload_user(stack):
    """Fresh copy of a user row from the database."""
    def loader(user_id, target=None):
        return load_user((target or stack).session_factory, user_id)
    return loader


@pytest.fixture
def test_user(stack) -> User:
    """Create an active tenant user."""
    return add_user(stack.session_factory, "user@test.com")


@pytest.fixture
def test_admin(stack) -> User:
    """Create a tenant admin."""
    return add_user(stack.session_factory, "admin@test.com", role=Role.TENANT_ADMIN)


@pytest.fixture
def super_admin(stack) -> User:
    """Create a super admin."""
    return add_user(stack.session_factory, "root@test.com", role=Role.SUPER_ADMIN)


@pytest.fixture
def pending_user(stack) -> User:
    """Create a user whose email is not verified yet."""
    return add_user(stack.session_factory, "pending@test.com", status=UserStatus.PENDING_VERIFICATION)
