"""
Warden - Token Codec

Opaque random tokens for refresh tokens, reset tokens and verification
proofs.

Tokens handed to clients are split in two halves, "<selector>.<verifier>":
the selector is stored in clear and indexed, so lookups stay a single
point read; the verifier is stored only as a SHA-256 hash and compared in
constant time, so response timing does not leak how much of a guessed
secret was right.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple


DEFAULT_TOKEN_BYTES = 32
MIN_TOKEN_BYTES = 16  # 128 bits
SELECTOR_BYTES = 16
SEPARATOR = "."


@dataclass(frozen=True)
class SplitToken:
    selector: str
    verifier: str

    @property
    def value(self) -> str:
        return f"{self.selector}{SEPARATOR}{self.verifier}"


def generate(byte_length: int = DEFAULT_TOKEN_BYTES) -> str:
    """
    Generate a URL-safe random token.

    Args:
        byte_length: Bytes of entropy (at least 16)

    Returns:
        URL-safe base64 string without padding
    """
    if byte_length < MIN_TOKEN_BYTES:
        raise ValueError(f"Tokens need at least {MIN_TOKEN_BYTES} bytes of entropy")
    return secrets.token_urlsafe(byte_length)


def generate_numeric_code(digits: int = 6) -> str:
    """One-time numeric code for SMS and 2FA challenges."""
    return f"{secrets.randbelow(10 ** digits):0{digits}d}"


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two secrets without leaking the mismatch position."""
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def hash_secret(secret: str) -> str:
    """SHA-256 hex digest of a secret; only this is persisted."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def matches_hash(secret: str, stored_hash: str) -> bool:
    return constant_time_equals(hash_secret(secret), stored_hash)


def issue_split_token(byte_length: int = DEFAULT_TOKEN_BYTES) -> SplitToken:
    """Issue a fresh selector/verifier pair."""
    return SplitToken(
        selector=generate(SELECTOR_BYTES),
        verifier=generate(byte_length),
    )


def parse_split_token(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Split a client-supplied token into (selector, verifier).

    Returns None for anything malformed; callers fail closed.
    """
    if not value or SEPARATOR not in value:
        return None
    selector, _, verifier = value.partition(SEPARATOR)
    if not selector or not verifier or len(selector) > 64:
        return None
    return selector, verifier
