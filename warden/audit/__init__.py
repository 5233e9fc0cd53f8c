"""
Warden - Audit Package

Append-only, hash-chained audit log written inside the business
transaction it describes.
"""

from warden.audit.logger import AuditLogger
from warden.audit.models import AuditAction, AuditChainHead, AuditLog, ChainVerificationResult

__all__ = [
    "AuditLogger",
    "AuditAction",
    "AuditChainHead",
    "AuditLog",
    "ChainVerificationResult",
]
