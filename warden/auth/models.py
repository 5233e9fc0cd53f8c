"""
Warden - Authentication Database Models

SQLModel tables for users, sessions, verification tokens and password
resets. Relations to other rows are plain foreign-key identifiers and are
resolved through repository calls, never through ORM object graphs.

Security:
- Passwords stored as bcrypt hashes only
- Only the non-secret selector half of a token is stored in clear; the
  secret half is stored as a SHA-256 hash
- All timestamps are naive UTC
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String
from sqlalchemy import Enum as SQLEnum
from sqlmodel import Field, SQLModel

from warden.clock import utcnow


def new_id() -> str:
    return str(uuid4())


def enum_column(enum_cls, nullable: bool = False, default=None) -> Column:
    """
    String column holding an enum's value.

    The persisted form is the enum value ("active", "two_factor", ...),
    so enum members double as the mapping table to and from storage.
    """
    return Column(
        SQLEnum(
            enum_cls,
            native_enum=False,
            length=32,
            validate_strings=True,
            values_callable=lambda members: [m.value for m in members],
        ),
        nullable=nullable,
        default=default,
    )


class Role(str, Enum):
    """User roles."""
    SUPER_ADMIN = "super_admin"
    TENANT_ADMIN = "tenant_admin"
    TENANT_USER = "tenant_user"


class UserStatus(str, Enum):
    """Account states that gate login."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    PENDING_VERIFICATION = "pending_verification"
    TRIAL_EXPIRED = "trial_expired"


class VerificationType(str, Enum):
    """What a verification token proves."""
    EMAIL_VERIFY = "email_verify"
    PHONE_VERIFY = "phone_verify"
    TWO_FACTOR = "two_factor"


class User(SQLModel, table=True):
    """
    User account.

    Attributes:
        id: Unique identifier (UUIDv4 string)
        email: Login identifier (unique, stored lower-cased)
        password_hash: bcrypt hash (never store plaintext)
        role: Role of the account
        status: Gates login (active, suspended, ...)
        failed_login_attempts: Consecutive failed logins
        locked_until: Lockout end after too many failed logins
        tenant_id: Passthrough tenant identifier
    """
    __tablename__ = "users"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    email: str = Field(
        sa_column=Column(String(255), unique=True, index=True, nullable=False),
        description="User email address (login identifier)",
    )
    password_hash: str = Field(sa_column=Column(String(255), nullable=False))
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    role: Role = Field(
        default=Role.TENANT_USER,
        sa_column=enum_column(Role, default=Role.TENANT_USER),
    )
    status: UserStatus = Field(
        default=UserStatus.ACTIVE,
        sa_column=enum_column(UserStatus, default=UserStatus.ACTIVE),
    )
    two_factor_enabled: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    two_factor_secret: Optional[str] = Field(default=None, max_length=255)
    failed_login_attempts: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0),
    )
    locked_until: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    trial_start_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    trial_end_date: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    tenant_id: Optional[str] = Field(default=None, index=True, max_length=64)
    email_verified_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    last_login_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    password_changed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow),
    )
    updated_at: datetime = Field(
        default_factory=utcnow,
        sa_column=Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow),
    )

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p)


class Session(SQLModel, table=True):
    """
    One authenticated login instance.

    A session is live while is_revoked is false and now < expires_at.
    Revocation is terminal. Refresh rotates refresh_selector and
    refresh_token_hash in place; retired values move to
    RefreshTokenHistory so that replays can be recognised.

    Attributes:
        refresh_selector: Non-secret, indexed half of the refresh token
        refresh_token_hash: SHA-256 of the secret half
        access_token_id: jti of the only access token currently honoured
    """
    __tablename__ = "sessions"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    refresh_selector: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    refresh_token_hash: str = Field(sa_column=Column(String(64), nullable=False))
    access_token_id: Optional[str] = Field(default=None, max_length=64)
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    device_id: Optional[str] = Field(default=None, max_length=255)
    is_revoked: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, default=False),
    )
    revoked_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    revoked_reason: Optional[str] = Field(default=None, max_length=255)
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    last_used_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))

    def is_live(self, now: datetime) -> bool:
        return not self.is_revoked and now < self.expires_at


class RefreshTokenHistory(SQLModel, table=True):
    """
    A refresh token that has been rotated away.

    Attributes:
        session_id: Session the token belonged to
        selector: Retired selector (unique)
        token_hash: SHA-256 of the retired secret half
        issued_at: When the token was issued
        retired_at: When rotation replaced it
    """
    __tablename__ = "refresh_token_history"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    session_id: str = Field(foreign_key="sessions.id", index=True, nullable=False)
    selector: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    token_hash: str = Field(sa_column=Column(String(64), nullable=False))
    issued_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    retired_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class VerificationToken(SQLModel, table=True):
    """
    Attempt-limited, typed, single-use token.

    `token` is the public handle (selector); the proof the user must
    present is stored only as proof_hash. Expired, exhausted and superseded
    are computed at check time, not stored as states.
    """
    __tablename__ = "verification_tokens"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    token: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    proof_hash: str = Field(sa_column=Column(String(64), nullable=False))
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    type: VerificationType = Field(sa_column=enum_column(VerificationType))
    data: Optional[Any] = Field(default=None, sa_column=Column(JSON, nullable=True))
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    used_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    superseded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    attempts: int = Field(
        default=0,
        sa_column=Column(Integer, nullable=False, default=0),
    )
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


class PasswordReset(SQLModel, table=True):
    """Single-use password reset token (selector in clear, secret hashed)."""
    __tablename__ = "password_resets"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    token: str = Field(
        sa_column=Column(String(64), unique=True, index=True, nullable=False),
    )
    token_hash: str = Field(sa_column=Column(String(64), nullable=False))
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    expires_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    used_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    superseded_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
