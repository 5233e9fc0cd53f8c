"""
Warden - Suspensions Package
"""

from warden.suspensions.models import (
    AppealDecision,
    AppealStatus,
    DurationType,
    Suspension,
    SuspensionResolution,
    SuspensionState,
    suspension_state,
)
from warden.suspensions.workflow import SuspensionWorkflow

__all__ = [
    "AppealDecision",
    "AppealStatus",
    "DurationType",
    "Suspension",
    "SuspensionResolution",
    "SuspensionState",
    "SuspensionWorkflow",
    "suspension_state",
]
