"""
Warden - Password Hashing Utilities

bcrypt helpers used by the Authenticator and by callers preparing the
hash handed to PasswordResetManager.redeem. The work factor defaults to
12; tests lower it through BCRYPT_WORK_FACTOR.

Security:
- Never log or expose plaintext passwords
- bcrypt includes salt automatically
- verify_password runs in constant time per hash
"""

import bcrypt


# 2^12 iterations
BCRYPT_WORK_FACTOR = 12

# bcrypt only looks at the first 72 bytes; newer releases raise past that
MAX_PASSWORD_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:MAX_PASSWORD_BYTES]


def hash_password(password: str, work_factor: int = None) -> str:
    """
    Hash a password using bcrypt.

    Returns:
        bcrypt hash string (includes salt)
    """
    salt = bcrypt.gensalt(rounds=work_factor or BCRYPT_WORK_FACTOR)
    return bcrypt.hashpw(_encode(password), salt).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against a bcrypt hash.

    Returns False for malformed hashes instead of raising.
    """
    try:
        return bcrypt.checkpw(_encode(plain_password), hashed_password.encode("utf-8"))
    except (ValueError, TypeError):
        return False


_dummy_hash = None


def burn_verification_time(plain_password: str) -> None:
    """
    Spend the time of one password check against a throwaway hash.

    Called when the account does not exist so that an unknown email and a
    wrong password take comparable time.
    """
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hash_password("warden-timing-equaliser")
    verify_password(plain_password, _dummy_hash)


def needs_rehash(hashed_password: str, target_work_factor: int = BCRYPT_WORK_FACTOR) -> bool:
    """
    Check if a password hash needs to be upgraded.

    Returns:
        True if the stored work factor is below target or the hash is not bcrypt
    """
    try:
        # bcrypt hash format: $2b$XX$...
        _, work_factor_str, _ = hashed_password.split("$")[1:4]
        return int(work_factor_str) < target_work_factor
    except (ValueError, IndexError):
        return True
