"""
Warden - JWT Access Tokens

Short-lived access tokens issued alongside a session. Claims:
- User ID (sub)
- Role
- Session ID (sid) for server-side validation
- Unique token ID (jti); the session remembers the jti of the only
  access token it currently honours, so refresh retires the previous one

Security:
- Short-lived tokens (policy access_token_ttl, 15 minutes by default)
- A valid signature alone is not enough; the session must be live
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
import secrets

from jose import jwt, JWTError
from pydantic import BaseModel, Field

from warden.config import settings


ACCESS_TOKEN_EXPIRE = timedelta(minutes=15)


class InvalidTokenError(Exception):
    """Raised when JWT validation fails."""
    pass


class TokenPayload(BaseModel):
    """
    JWT token payload structure.

    Attributes:
        sub: Subject (user ID)
        role: User role
        sid: Session ID for server-side validation
        jti: Unique token ID
        exp: Expiration timestamp
        iat: Issued-at timestamp
    """
    sub: str = Field(..., description="User ID")
    role: str = Field(..., description="User role")
    sid: str = Field(..., description="Session ID")
    jti: str = Field(..., description="Token ID")
    exp: datetime = Field(..., description="Expiration time")
    iat: datetime = Field(..., description="Issued at time")


def _signing_key(secret_key: Optional[str]) -> str:
    key = secret_key if secret_key is not None else settings.SECRET_KEY
    if not key:
        raise InvalidTokenError("SECRET_KEY is not configured")
    return key


def create_access_token(
    user_id: str,
    role: str,
    session_id: str,
    issued_at: datetime,
    expires_delta: Optional[timedelta] = None,
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Create a new JWT access token.

    Args:
        user_id: User's unique identifier
        role: User's role
        session_id: Server-side session identifier
        issued_at: Naive UTC issue time (from the injected clock)
        expires_delta: Token lifetime
        secret_key: Override the configured signing key
        algorithm: Override the configured algorithm

    Returns:
        Tuple of (encoded JWT string, token ID)
    """
    expire = issued_at + (expires_delta or ACCESS_TOKEN_EXPIRE)
    token_id = secrets.token_hex(16)

    payload = {
        "sub": user_id,
        "role": role,
        "sid": session_id,
        "jti": token_id,
        "exp": expire.replace(tzinfo=timezone.utc),
        "iat": issued_at.replace(tzinfo=timezone.utc),
    }

    encoded_jwt = jwt.encode(
        payload,
        _signing_key(secret_key),
        algorithm=algorithm or settings.JWT_ALGORITHM,
    )

    return encoded_jwt, token_id


def verify_access_token(
    token: str,
    now: Optional[datetime] = None,
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> TokenPayload:
    """
    Verify and decode a JWT access token.

    Signature is always checked. Expiry is checked against `now` when it
    is given (injected clock), otherwise against wall-clock time.

    Raises:
        InvalidTokenError: If token is invalid, expired, or malformed
    """
    try:
        payload = jwt.decode(
            token,
            _signing_key(secret_key),
            algorithms=[algorithm or settings.JWT_ALGORITHM],
            options={"verify_exp": now is None},
        )
        decoded = TokenPayload(**payload)
    except (JWTError, ValueError) as e:
        raise InvalidTokenError(f"Token validation failed: {str(e)}")

    if now is not None:
        expires = decoded.exp.astimezone(timezone.utc).replace(tzinfo=None)
        if now >= expires:
            raise InvalidTokenError("Token validation failed: token expired")

    return decoded
