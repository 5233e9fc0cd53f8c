"""
Warden - Suspension Models

Administrative suspension of a user account with its appeal
sub-workflow. The one-active-suspension-per-user rule is a partial unique
index, so two concurrent suspend calls cannot both insert.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, text
from sqlmodel import Field, SQLModel

from warden.auth.models import enum_column, new_id


class DurationType(str, Enum):
    TEMPORARY = "temporary"
    PERMANENT = "permanent"
    INDEFINITE = "indefinite"


class AppealStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"


class AppealDecision(str, Enum):
    APPROVE = "approve"
    DENY = "deny"


class SuspensionResolution(str, Enum):
    """How an inactive suspension ended."""
    EXPIRED = "expired"
    LIFTED = "lifted"
    APPEAL_APPROVED = "appeal_approved"


class SuspensionState(str, Enum):
    """Workflow state, derived from the stored columns."""
    ACTIVE_APPEALABLE = "active_appealable"
    ACTIVE_NON_APPEALABLE = "active_non_appealable"
    APPEAL_PENDING = "appeal_pending"
    APPEAL_APPROVED = "appeal_approved"
    APPEAL_DENIED = "appeal_denied"
    EXPIRED = "expired"
    MANUALLY_LIFTED = "manually_lifted"


class Suspension(SQLModel, table=True):
    """
    One suspension of one user.

    Attributes:
        suspended_until: End of a temporary suspension; null otherwise
        appeal_deadline: Last moment an appeal may be filed (if can_appeal)
        appeal_status: Only meaningful when has_appealed
        is_active: True from creation until expiry, lift or approved appeal
        resolution: Why an inactive suspension ended
    """
    __tablename__ = "suspensions"
    __table_args__ = (
        Index(
            "uq_suspensions_active_user",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    id: str = Field(default_factory=new_id, primary_key=True, max_length=36)
    user_id: str = Field(foreign_key="users.id", index=True, nullable=False)
    suspended_by_id: str = Field(foreign_key="users.id", nullable=False)
    reason: str = Field(sa_column=Column(Text, nullable=False))
    duration_type: DurationType = Field(sa_column=enum_column(DurationType))
    duration_days: Optional[int] = Field(default=None, sa_column=Column(Integer, nullable=True))
    suspended_until: Optional[datetime] = Field(
        default=None,
        sa_column=Column(DateTime, nullable=True, index=True),
    )
    can_appeal: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    appeal_deadline: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    has_appealed: bool = Field(default=False, sa_column=Column(Boolean, nullable=False, default=False))
    appeal_reason: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))
    appealed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    appeal_status: Optional[AppealStatus] = Field(
        default=None,
        sa_column=enum_column(AppealStatus, nullable=True),
    )
    appeal_reviewed_by_id: Optional[str] = Field(default=None, foreign_key="users.id")
    appeal_reviewed_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    is_active: bool = Field(default=True, sa_column=Column(Boolean, nullable=False, default=True))
    resolution: Optional[SuspensionResolution] = Field(
        default=None,
        sa_column=enum_column(SuspensionResolution, nullable=True),
    )
    resolved_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime, nullable=True))
    lifted_by_id: Optional[str] = Field(default=None, foreign_key="users.id")
    lift_reason: Optional[str] = Field(default=None, sa_column=Column(String(1000), nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime, nullable=False))


def suspension_state(suspension: Suspension) -> SuspensionState:
    """Map stored columns onto the workflow state."""
    if not suspension.is_active:
        if suspension.resolution == SuspensionResolution.APPEAL_APPROVED:
            return SuspensionState.APPEAL_APPROVED
        if suspension.resolution == SuspensionResolution.EXPIRED:
            return SuspensionState.EXPIRED
        return SuspensionState.MANUALLY_LIFTED

    if suspension.has_appealed:
        if suspension.appeal_status == AppealStatus.DENIED:
            return SuspensionState.APPEAL_DENIED
        return SuspensionState.APPEAL_PENDING

    if suspension.can_appeal:
        return SuspensionState.ACTIVE_APPEALABLE
    return SuspensionState.ACTIVE_NON_APPEALABLE
