"""
Warden - Maintenance Sweep

Expires temporary suspensions that have run out, moves accounts whose
trial has ended to trial_expired and deletes sessions that ended longer
ago than the retention period. Meant to run from cron;
safe to run repeatedly or concurrently.

Usage:
    python -m scripts.sweep_suspensions
"""

import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from warden.audit.logger import AuditLogger
from warden.auth.sessions import SessionManager
from warden.auth.trials import TrialExpiry
from warden.config import settings
from warden.database import get_engine, get_session_factory
from warden.logging import configure_logging, get_logger
from warden.suspensions.workflow import SuspensionWorkflow


logger = get_logger("warden.sweep")


def run_sweep() -> dict:
    engine = get_engine(settings.DATABASE_URL)
    session_factory = get_session_factory(engine)
    policy = settings.policy()

    audit = AuditLogger(session_factory)
    sessions = SessionManager(session_factory, audit, policy)
    workflow = SuspensionWorkflow(session_factory, audit, sessions, policy)
    trials = TrialExpiry(session_factory, audit, sessions)

    expired = workflow.expire_sweep()
    trials_expired = trials.expire_sweep()
    purged = sessions.purge_expired()

    logger.info(
        "sweep_finished",
        suspensions_expired=expired,
        trials_expired=trials_expired,
        sessions_purged=purged,
    )
    return {
        "suspensions_expired": expired,
        "trials_expired": trials_expired,
        "sessions_purged": purged,
    }


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    run_sweep()
