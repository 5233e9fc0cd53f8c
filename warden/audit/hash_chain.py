"""
Warden - Hash Chain for Audit Integrity

Implements cryptographic hash chaining for tamper-evident audit logs.
Each audit entry includes a hash of itself + the previous entry's hash.

Verification:
- Any modification to an entry breaks the chain
- Chain integrity can be verified by recomputing hashes
- Detects insertions, deletions, and modifications

Algorithm: SHA-256
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Iterable, Optional

from warden.audit.models import AuditLog, ChainVerificationResult


CHAIN_NAME = "warden.audit"


def compute_genesis_hash(chain_name: str = CHAIN_NAME) -> str:
    """
    Genesis hash the first entry links to.

    Includes the chain name so that entries cannot be spliced in from
    another deployment's chain.
    """
    content = f"GENESIS|{chain_name}"
    return hashlib.sha256(content.encode()).hexdigest()


def compute_event_hash(
    event_id: str,
    sequence: int,
    action: str,
    performed_by_id: Optional[str],
    target_user_id: Optional[str],
    details: Optional[Dict[str, Any]],
    ip_address: Optional[str],
    user_agent: Optional[str],
    created_at: datetime,
    prev_hash: str,
) -> str:
    """
    Compute SHA-256 hash for an audit entry.

    Every stored attribute takes part, details as canonical JSON, plus the
    previous entry's hash (chain link).

    Returns:
        Hex-encoded SHA-256 hash
    """
    canonical_details = json.dumps(details or {}, sort_keys=True, separators=(",", ":"), default=str)
    content = "|".join([
        event_id,
        str(sequence),
        action,
        performed_by_id or "",
        target_user_id or "",
        canonical_details,
        ip_address or "",
        user_agent or "",
        created_at.isoformat(),
        prev_hash,
    ])
    return hashlib.sha256(content.encode()).hexdigest()


def hash_entry(entry: AuditLog) -> str:
    """Recompute the hash of a stored entry from its own fields."""
    return compute_event_hash(
        event_id=entry.id,
        sequence=entry.sequence,
        action=entry.action.value,
        performed_by_id=entry.performed_by_id,
        target_user_id=entry.target_user_id,
        details=entry.details,
        ip_address=entry.ip_address,
        user_agent=entry.user_agent,
        created_at=entry.created_at,
        prev_hash=entry.prev_hash,
    )


def verify_chain(entries: Iterable[AuditLog], chain_name: str = CHAIN_NAME) -> ChainVerificationResult:
    """
    Verify the integrity of the hash chain.

    Args:
        entries: All entries, ordered by sequence ascending

    Returns:
        ChainVerificationResult; broken_at names the first entry whose
        hash, link or position does not match
    """
    genesis = compute_genesis_hash(chain_name)
    prev_hash = genesis
    expected_sequence = 1
    first_id = None
    last_id = None
    count = 0

    for entry in entries:
        count += 1
        if first_id is None:
            first_id = entry.id

        if (
            entry.sequence != expected_sequence
            or entry.prev_hash != prev_hash
            or entry.hash != hash_entry(entry)
        ):
            return ChainVerificationResult(
                is_valid=False,
                event_count=count,
                first_event_id=first_id,
                last_event_id=last_id,
                genesis_hash=genesis,
                final_hash=prev_hash,
                broken_at=entry.id,
            )

        prev_hash = entry.hash
        last_id = entry.id
        expected_sequence += 1

    return ChainVerificationResult(
        is_valid=True,
        event_count=count,
        first_event_id=first_id,
        last_event_id=last_id,
        genesis_hash=genesis,
        final_hash=prev_hash if count else None,
    )
