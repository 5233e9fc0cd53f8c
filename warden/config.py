"""
Warden - Configuration Management

Centralized configuration using Pydantic Settings.
Secrets and connection strings are loaded from environment variables.

Policy constants (session lifetime, attempt limits, appeal window, ...)
live in SecurityPolicy so that managers can be built with an explicit,
testable policy object instead of reading globals.
"""

from datetime import timedelta

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class SecurityPolicy(BaseModel):
    """
    Policy constants consumed by the managers.

    Recognised options use the camelCase names of the public configuration
    contract (sessionTTL, maxVerificationAttempts, appealWindowDays,
    resetTokenTTL, ...). Snake-case field names are accepted as well.
    Unknown options are rejected.
    """
    session_ttl: timedelta = Field(default=timedelta(days=30), alias="sessionTTL")
    max_verification_attempts: int = Field(default=5, ge=1, alias="maxVerificationAttempts")
    appeal_window_days: int = Field(default=7, ge=0, alias="appealWindowDays")
    reset_token_ttl: timedelta = Field(default=timedelta(hours=1), alias="resetTokenTTL")
    access_token_ttl: timedelta = Field(default=timedelta(minutes=15), alias="accessTokenTTL")
    verification_token_ttl: timedelta = Field(default=timedelta(hours=24), alias="verificationTokenTTL")
    max_failed_logins: int = Field(default=5, ge=1, alias="maxFailedLogins")
    lockout_duration: timedelta = Field(default=timedelta(minutes=30), alias="lockoutDuration")
    session_retention: timedelta = Field(default=timedelta(days=90), alias="sessionRetention")

    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    @field_validator(
        "session_ttl",
        "reset_token_ttl",
        "access_token_ttl",
        "verification_token_ttl",
        "lockout_duration",
    )
    @classmethod
    def positive_duration(cls, v: timedelta) -> timedelta:
        if v <= timedelta(0):
            raise ValueError("Duration must be positive")
        return v

    @property
    def appeal_window(self) -> timedelta:
        return timedelta(days=self.appeal_window_days)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Attributes:
        DATABASE_URL: SQLAlchemy URL (PostgreSQL in production, SQLite locally)
        SECRET_KEY: JWT signing key for access tokens
        JWT_ALGORITHM: JWT signing algorithm
        LOG_LEVEL: Root log level
        LOG_JSON: Render logs as JSON lines instead of console output
    """

    # Database
    DATABASE_URL: str = "sqlite:///./warden.db"

    # Security
    SECRET_KEY: str = ""  # Must be set via environment
    JWT_ALGORITHM: str = "HS256"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    # Policy overrides
    SESSION_TTL_DAYS: int = 30
    MAX_VERIFICATION_ATTEMPTS: int = 5
    APPEAL_WINDOW_DAYS: int = 7
    RESET_TOKEN_TTL_MINUTES: int = 60
    ACCESS_TOKEN_TTL_MINUTES: int = 15
    VERIFICATION_TOKEN_TTL_HOURS: int = 24
    MAX_FAILED_LOGINS: int = 5
    LOCKOUT_MINUTES: int = 30
    SESSION_RETENTION_DAYS: int = 90

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True

    def policy(self) -> SecurityPolicy:
        """Build the SecurityPolicy described by these settings."""
        return SecurityPolicy(
            session_ttl=timedelta(days=self.SESSION_TTL_DAYS),
            max_verification_attempts=self.MAX_VERIFICATION_ATTEMPTS,
            appeal_window_days=self.APPEAL_WINDOW_DAYS,
            reset_token_ttl=timedelta(minutes=self.RESET_TOKEN_TTL_MINUTES),
            access_token_ttl=timedelta(minutes=self.ACCESS_TOKEN_TTL_MINUTES),
            verification_token_ttl=timedelta(hours=self.VERIFICATION_TOKEN_TTL_HOURS),
            max_failed_logins=self.MAX_FAILED_LOGINS,
            lockout_duration=timedelta(minutes=self.LOCKOUT_MINUTES),
            session_retention=timedelta(days=self.SESSION_RETENTION_DAYS),
        )


settings = Settings()
