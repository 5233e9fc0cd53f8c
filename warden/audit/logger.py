"""
Warden - Audit Logger

Append-only record of security-relevant actions, written in the same
transaction as the business change it describes. If the audit write
fails, the business change fails with it: an unaudited state change is
treated as a correctness bug, not a telemetry gap.
"""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session as DBSession, select

from warden.audit.hash_chain import CHAIN_NAME, compute_event_hash, compute_genesis_hash, verify_chain
from warden.audit.models import AuditAction, AuditChainHead, AuditLog, ChainVerificationResult
from warden.clock import Clock, SystemClock
from warden.database import SessionFactory, transaction
from warden.logging import get_logger


logger = get_logger(__name__)

USER_AGENT_MAX = 512


def _json_safe(details: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    # Stored form must equal hashed form, so datetimes etc. become strings now
    return json.loads(json.dumps(details or {}, default=str))


def chain_head_query(chain_name: str):
    """SELECT ... FOR UPDATE on the head row of a chain."""
    return (
        select(AuditChainHead)
        .where(AuditChainHead.chain == chain_name)
        .with_for_update()
        .execution_options(populate_existing=True)
    )


class AuditLogger:
    """
    Usage:
        audit = AuditLogger(session_factory)
        with transaction(session_factory) as db:
            ...  # business change
            audit.record(db, AuditAction.USER_SUSPENDED, performed_by_id=admin_id,
                         target_user_id=user_id, details={"reason": reason})
    """

    def __init__(
        self,
        session_factory: SessionFactory,
        clock: Clock = None,
        chain_name: str = CHAIN_NAME,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._chain_name = chain_name

    def record(
        self,
        db: DBSession,
        action: AuditAction,
        performed_by_id: Optional[str] = None,
        target_user_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> AuditLog:
        """
        Append an entry inside the caller's transaction.

        The chain head row is locked first, so concurrent appenders queue up
        behind it until the holder commits or rolls back. The entry is flushed
        immediately so that a failing write raises here and the caller's
        transaction rolls back.

        created_at defaults to the logger's clock; sweeps pass the instant
        they evaluated due rows against.
        """
        head = self._lock_head(db)
        sequence = head.sequence + 1
        prev_hash = head.hash

        entry = AuditLog(
            sequence=sequence,
            action=action,
            performed_by_id=performed_by_id,
            target_user_id=target_user_id,
            details=_json_safe(details),
            ip_address=ip,
            user_agent=user_agent[:USER_AGENT_MAX] if user_agent else None,
            created_at=created_at or self._clock.now(),
            prev_hash=prev_hash,
            hash="",
        )
        entry.hash = compute_event_hash(
            event_id=entry.id,
            sequence=entry.sequence,
            action=action.value,
            performed_by_id=performed_by_id,
            target_user_id=target_user_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
            prev_hash=prev_hash,
        )

        head.sequence = sequence
        head.hash = entry.hash
        db.add(entry)
        db.add(head)
        db.flush()

        logger.info(
            "audit_recorded",
            action=action.value,
            sequence=sequence,
            performed_by_id=performed_by_id,
            target_user_id=target_user_id,
        )
        return entry

    def _lock_head(self, db: DBSession) -> AuditChainHead:
        head = db.exec(chain_head_query(self._chain_name)).first()
        if head is not None:
            return head

        # First append on this database: seed the head from the existing log
        latest = db.exec(
            select(AuditLog).order_by(AuditLog.sequence.desc()).limit(1)
        ).first()
        dialect = db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        db.execute(
            insert(AuditChainHead)
            .values(
                chain=self._chain_name,
                sequence=latest.sequence if latest else 0,
                hash=latest.hash if latest else compute_genesis_hash(self._chain_name),
            )
            .on_conflict_do_nothing(index_elements=["chain"])
        )
        return db.exec(chain_head_query(self._chain_name)).one()

    def entries_for_user(self, user_id: str) -> List[AuditLog]:
        """Entries targeting the user, oldest first."""
        with transaction(self._session_factory) as db:
            return list(db.exec(
                select(AuditLog)
                .where(AuditLog.target_user_id == user_id)
                .order_by(AuditLog.sequence)
            ).all())

    def recent(self, limit: int = 20) -> List[AuditLog]:
        """Most recent entries, newest first."""
        with transaction(self._session_factory) as db:
            return list(db.exec(
                select(AuditLog).order_by(AuditLog.sequence.desc()).limit(limit)
            ).all())

    def verify_chain(self) -> ChainVerificationResult:
        """Recompute every hash and link in sequence order."""
        with transaction(self._session_factory) as db:
            entries = db.exec(select(AuditLog).order_by(AuditLog.sequence)).all()
            result = verify_chain(entries, self._chain_name)

        if not result.is_valid:
            logger.warning("audit_chain_broken", broken_at=result.broken_at)
        return result
