"""
Warden - User Repository

Narrow data access for User rows. Works inside the caller's transaction:
it never commits, it only flushes so that constraint violations surface
where they happen.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session as DBSession, select

from warden.auth.models import User
from warden.errors import EmailAlreadyRegistered


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserRepository:
    """
    Lookups and updates for users.

    Usage:
        with transaction(session_factory) as db:
            users = UserRepository(db)
            user = users.find_by_email("a@example.com")
    """

    def __init__(self, db: DBSession):
        self.db = db

    def find_by_id(self, user_id: str, for_update: bool = False) -> Optional[User]:
        statement = select(User).where(User.id == user_id)
        if for_update:
            statement = statement.with_for_update()
        return self.db.exec(statement).first()

    def find_by_email(self, email: str) -> Optional[User]:
        statement = select(User).where(User.email == normalize_email(email))
        return self.db.exec(statement).first()

    def add(self, user: User) -> User:
        """
        Insert a new user.

        Raises:
            EmailAlreadyRegistered: the email is taken
        """
        user.email = normalize_email(user.email)
        if self.find_by_email(user.email) is not None:
            raise EmailAlreadyRegistered(user.email)

        self.db.add(user)
        try:
            self.db.flush()
        except IntegrityError as e:
            # Lost a race against a concurrent registration
            raise EmailAlreadyRegistered(user.email) from e
        return user

    def update(self, user: User, now: Optional[datetime] = None) -> User:
        if now is not None:
            user.updated_at = now
        self.db.add(user)
        self.db.flush()
        return user

    def increment_failed_logins(self, user_id: str) -> int:
        """Atomically bump the failed-login counter and return the new value."""
        self.db.execute(
            update(User)
            .where(User.id == user_id)
            .values(failed_login_attempts=User.failed_login_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.exec(
            select(User.failed_login_attempts).where(User.id == user_id)
        ).one()
