"""
Storage module.

Provides PostgreSQL persistence for credentials, sessions, audit rows and
captcha attempts.
"""

from panelrunner.storage.database import DatabaseManager
from panelrunner.storage.repositories import (
    AuditRepository,
    CaptchaLogRepository,
    CredentialRepository,
    SessionRepository,
)

__all__ = [
    "AuditRepository",
    "CaptchaLogRepository",
    "CredentialRepository",
    "DatabaseManager",
    "SessionRepository",
]
