"""SQLAlchemy ORM model and CRUD operations for login accounts.

Holds only what the login flow needs: the account row, argon2 password
hashing, and lookups by email.  Emails are stored lower-cased so they match
the rate-limit identifier.
"""

import uuid
from datetime import datetime, timezone

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from sqlalchemy import Boolean, Column, DateTime, String
from sqlalchemy.orm import Session

from authgate.helpers.auth_db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)  # UUID
    email = Column(String, nullable=False, unique=True)  # lower-cased
    first_name = Column(String)
    last_name = Column(String)
    password_hash = Column(String)  # argon2 hash
    role = Column(String, nullable=False, default="user")
    is_verified = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    last_login_at = Column(DateTime)

    @property
    def display_name(self) -> str:
        name = " ".join(p for p in (self.first_name, self.last_name) if p)
        return name or self.email.split("@")[0]


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Password utilities (argon2)
# ---------------------------------------------------------------------------

_ph = PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a plaintext password using Argon2id."""
    return _ph.hash(password)


def verify_password(user: User, password: str) -> bool:
    """Verify a plaintext password against a user's stored hash."""
    if not user.password_hash:
        return False
    try:
        return _ph.verify(user.password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


# ---------------------------------------------------------------------------
# User CRUD
# ---------------------------------------------------------------------------


def get_user_by_email(db: Session, email: str) -> User | None:
    """Look up a user by email address."""
    return db.query(User).filter(User.email == normalize_email(email)).first()


def create_local_user(
    db: Session,
    email: str,
    password: str,
    first_name: str | None = None,
    last_name: str | None = None,
    *,
    role: str = "user",
    is_verified: bool = False,
) -> User:
    """Create a password-login account."""
    user = User(
        id=str(uuid.uuid4()),
        email=normalize_email(email),
        first_name=first_name,
        last_name=last_name,
        password_hash=hash_password(password),
        role=role,
        is_verified=is_verified,
    )
    db.add(user)
    return user


def record_login(db: Session, user: User) -> None:
    """Stamp the last successful login time."""
    user.last_login_at = datetime.now(timezone.utc)
