"""
Warden - Authentication Package

- Server-side sessions with rotating refresh tokens
- JWT access tokens bound to their session
- bcrypt password hashing with login lockout
- Attempt-limited verification tokens and single-use password resets
"""

from warden.auth.models import PasswordReset, Role, Session, User, UserStatus, VerificationToken, VerificationType
from warden.auth.password import hash_password, verify_password
from warden.auth.tokens import create_access_token, verify_access_token

__all__ = [
    "User",
    "Session",
    "Role",
    "UserStatus",
    "VerificationToken",
    "VerificationType",
    "PasswordReset",
    "hash_password",
    "verify_password",
    "create_access_token",
    "verify_access_token",
]
