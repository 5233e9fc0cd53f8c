"""
Warden - Database Seed Script

Creates the tables and a bootstrap super admin for development.

Usage:
    python -m scripts.seed_users
    WARDEN_ADMIN_EMAIL=root@example.com WARDEN_ADMIN_PASSWORD=... python -m scripts.seed_users
"""

import os
import sys
from getpass import getpass
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from warden.auth.models import Role, User, UserStatus
from warden.auth.password import hash_password
from warden.auth.repository import UserRepository
from warden.clock import utcnow
from warden.config import settings
from warden.database import get_engine, get_session_factory, init_db, transaction
from warden.errors import EmailAlreadyRegistered
from warden.logging import configure_logging


DEFAULT_ADMIN_EMAIL = "admin@warden.local"


def seed_admin_user(email: str, password: str) -> bool:
    """Create the super admin unless the email is already registered."""
    engine = get_engine(settings.DATABASE_URL)
    init_db(engine)
    session_factory = get_session_factory(engine)

    now = utcnow()
    try:
        with transaction(session_factory) as db:
            UserRepository(db).add(User(
                email=email,
                password_hash=hash_password(password),
                first_name="Warden",
                last_name="Admin",
                role=Role.SUPER_ADMIN,
                status=UserStatus.ACTIVE,
                email_verified_at=now,
                password_changed_at=now,
                created_at=now,
                updated_at=now,
            ))
    except EmailAlreadyRegistered:
        print(f"User {email} already exists.")
        return False

    print("Super admin created successfully!")
    print(f"  Email: {email}")
    print(f"  Role: {Role.SUPER_ADMIN.value}")
    return True


if __name__ == "__main__":
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)

    print("=" * 50)
    print("Warden - User Seed Script")
    print("=" * 50)

    email = os.environ.get("WARDEN_ADMIN_EMAIL", DEFAULT_ADMIN_EMAIL)
    password = os.environ.get("WARDEN_ADMIN_PASSWORD") or getpass(f"Password for {email}: ")
    if len(password) < 12:
        print("Password must be at least 12 characters.")
        sys.exit(1)

    seed_admin_user(email, password)

    print()
    print("Done!")
