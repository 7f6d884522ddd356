"""Audit logging for login events.

Writes structured audit entries to the auth database: successful logins,
failed logins (with the attempt count at the time), and attempts refused
by the rate limiter.

Usage::

    from authgate.helpers.audit import log_auth_event

    await log_auth_event(
        "login_failed",
        email="a@b.com",
        ip="10.0.0.1",
        attempt_count=3,
        reason="Invalid password",
    )

.. warning::
    Never include passwords, tokens, or other secrets in *details*.
"""

import json
import logging
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, String, Text

from authgate.helpers import auth_db
from authgate.helpers.auth_db import Base

logger = logging.getLogger(__name__)

LOGIN_SUCCESS = "login"
LOGIN_FAILED = "login_failed"
LOGIN_LOCKED = "login_locked"
LOGOUT = "logout"


class AuditLog(Base):
    """Immutable audit log entry."""

    __tablename__ = "audit_log"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)
    resource = Column(String, nullable=True)
    details_json = Column(Text, nullable=True)
    ip_address = Column(String, nullable=True)
    timestamp = Column(DateTime, default=lambda: datetime.now(timezone.utc))

    @property
    def details(self) -> dict:
        return json.loads(self.details_json) if self.details_json else {}


async def create_audit_entry(
    user_id: str | None,
    action: str,
    resource: str | None = None,
    details: dict | None = None,
    ip: str | None = None,
) -> None:
    """Write an audit log entry to the auth database.

    Failures are logged and swallowed; the login path never sees
    an audit error.
    """
    try:
        with auth_db.get_session() as db:
            db.add(
                AuditLog(
                    id=str(uuid4()),
                    user_id=user_id,
                    action=action,
                    resource=resource,
                    details_json=json.dumps(details) if details else None,
                    ip_address=ip,
                    timestamp=datetime.now(timezone.utc),
                )
            )
    except Exception:
        logger.exception("Audit log write failed for action %s", action)


async def log_auth_event(
    kind: str,
    *,
    email: str,
    ip: str | None,
    user_id: str | None = None,
    attempt_count: int | None = None,
    reason: str | None = None,
) -> None:
    """Record a login event with its identity, origin and attempt count."""
    details: dict = {"email": email}
    if attempt_count is not None:
        details["attempt_count"] = attempt_count
    if reason:
        details["reason"] = reason
    await create_audit_entry(
        user_id=user_id,
        action=kind,
        resource="/login",
        details=details,
        ip=ip,
    )
