"""
Warden - Database Configuration

SQLModel database setup with connection pooling.
Supports PostgreSQL (production) and SQLite (development, tests).

Usage:
    from warden.database import get_engine, init_db, get_session_factory

    engine = get_engine()
    init_db(engine)  # Creates tables
    session_factory = get_session_factory(engine)
"""

from contextlib import contextmanager
from typing import Callable, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from warden.config import settings
from warden.errors import StorageFailure
from warden.logging import get_logger


logger = get_logger(__name__)

SessionFactory = Callable[[], Session]


def get_database_url() -> str:
    """
    Get database URL from settings.

    Returns:
        PostgreSQL or SQLite connection string
    """
    if settings.DATABASE_URL:
        return settings.DATABASE_URL

    return "sqlite:///./warden.db"


def get_engine(database_url: str = None, echo: bool = False):
    """
    Create SQLAlchemy engine with appropriate configuration.

    Args:
        database_url: Override database URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()

    if url == "sqlite://" or url.startswith("sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty database
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

    # PostgreSQL configuration with connection pooling
    return create_engine(
        url,
        echo=echo,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )


def init_db(engine) -> None:
    """
    Initialize database tables.

    Creates all tables defined in SQLModel models.
    Safe to call multiple times (uses CREATE IF NOT EXISTS).
    """
    # Import models to register them with SQLModel
    from warden.audit.models import AuditChainHead, AuditLog  # noqa: F401
    from warden.auth.models import (  # noqa: F401
        PasswordReset,
        RefreshTokenHistory,
        Session as AuthSession,
        User,
        VerificationToken,
    )
    from warden.suspensions.models import Suspension  # noqa: F401

    SQLModel.metadata.create_all(engine)


def get_session_factory(engine) -> SessionFactory:
    """
    Create a session factory bound to engine.

    Returns:
        Callable that creates new database sessions
    """
    def session_factory() -> Session:
        return Session(engine, expire_on_commit=False)

    return session_factory


@contextmanager
def transaction(
    session_factory: SessionFactory,
    db: Optional[Session] = None,
) -> Iterator[Session]:
    """
    Unit of work for one workflow operation.

    When `db` is given the caller already owns a transaction and this block
    simply joins it; commit and rollback stay with the owner. Otherwise a new
    session is opened, committed on success and rolled back on any error.
    Database errors surface as StorageFailure.
    """
    if db is not None:
        yield db
        return

    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("transaction_rolled_back", error=type(e).__name__)
        raise StorageFailure(f"Storage operation failed: {e}") from e
    except BaseException:
        session.rollback()
        raise
    finally:
        session.close()
