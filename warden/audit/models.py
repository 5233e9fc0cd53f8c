"""
Warden - Audit Models

The audit_logs table and the value objects returned by chain
verification.

Entries are append-only. Each entry stores the hash of its predecessor and
its own hash; sequence is unique and gapless so concurrent writers cannot
fork the chain.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import JSON, BigInteger, Column, DateTime, String
from sqlmodel import Field, SQLModel

from warden.auth.models import enum_column, new_id


class AuditAction(str, Enum):
    """Security-relevant actions."""
    USER_LOGIN = "user.login"
    USER_LOGIN_FAILED = "user.login_failed"
    USER_LOCKED = "user.locked"
    USER_EMAIL_VERIFIED = "user.email_verified"
    USER_PASSWORD_RESET = "user.password_reset"
    USER_SUSPENDED = "user.suspended"
    USER_TRIAL_EXPIRED = "user.trial_expired"

    SESSION_REVOKED = "session.revoked"
    SESSION_REVOKED_ALL = "session.revoked_all"
    SESSION_REUSE_DETECTED = "session.reuse_detected"

    VERIFICATION_ISSUED = "verification.issued"
    VERIFICATION_SUCCEEDED = "verification.succeeded"
    VERIFICATION_FAILED = "verification.failed"

    PASSWORD_RESET_REQUESTED = "password_reset.requested"

    APPEAL_FILED = "suspension.appeal_filed"
    APPEAL_APPROVED = "suspension.appeal_approved"
    APPEAL_DENIED = "suspension.appeal_denied"
    SUSPENSION_EXPIRED = "suspension.expired"
    SUSPENSION_LIFTED = "suspension.lifted"


class AuditLog(SQLModel, table=True):
    """
    One audit entry.

    performed_by_id and target_user_id are independently nullable:
    system-initiated actions (expiry sweep) have no human performer.
    """
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    sequence: int = Field(
        sa_column=Column(BigInteger, unique=True, nullable=False),
    )
    action: AuditAction = Field(sa_column=enum_column(AuditAction))
    performed_by_id: Optional[str] = Field(default=None, index=True, max_length=36)
    target_user_id: Optional[str] = Field(default=None, index=True, max_length=36)
    details: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON, nullable=True))
    ip_address: Optional[str] = Field(default=None, max_length=45)
    user_agent: Optional[str] = Field(default=None, max_length=512)
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False, index=True))
    prev_hash: str = Field(sa_column=Column(String(64), nullable=False))
    hash: str = Field(sa_column=Column(String(64), nullable=False))


class AuditChainHead(SQLModel, table=True):
    """
    Latest sequence and hash of a chain.

    Appenders lock this row before reading it, which serializes writers
    even under READ COMMITTED.
    """
    __tablename__ = "audit_chain_heads"

    chain: str = Field(primary_key=True, max_length=64)
    sequence: int = Field(sa_column=Column(BigInteger, nullable=False))
    hash: str = Field(sa_column=Column(String(64), nullable=False))


class ChainVerificationResult(BaseModel):
    """Result of audit chain verification."""
    is_valid: bool
    event_count: int
    first_event_id: Optional[str] = None
    last_event_id: Optional[str] = None
    genesis_hash: str
    final_hash: Optional[str] = None
    broken_at: Optional[str] = None
