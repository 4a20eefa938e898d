"""
Record types and collaborator interfaces for the datastore.

The pipeline only talks to storage through these protocols; the SQLAlchemy
repositories implement them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Protocol


class CaptchaStatus(StrEnum):
    """Outcome recorded for one captcha solve."""

    PENDING = "pending"
    SUCCESS = "success"
    FAIL = "fail"


@dataclass(frozen=True)
class StoredCredential:
    """Decrypted login details for one target account."""

    credential_ref: str
    target_id: str
    target_name: str
    username: str
    password: str
    login_url: str
    dashboard_url: str | None = None

    @property
    def is_complete(self) -> bool:
        return bool(self.username) and bool(self.password)

    def __repr__(self) -> str:
        return (
            f"StoredCredential(credential_ref={self.credential_ref!r}, "
            f"target_id={self.target_id!r}, username={self.username!r})"
        )


@dataclass
class PersistedSession:
    """Captured authentication artifacts for a (user, credential) pair."""

    id: int
    user_id: str
    credential_id: str
    session_data: dict[str, Any]
    is_active: bool
    expires_at: datetime | None
    created_at: datetime

    @property
    def cookies(self) -> list[dict[str, Any]]:
        return list(self.session_data.get("cookies", []))

    def is_expired(self, now: datetime | None = None) -> bool:
        """A session without an expiry, or with one in the past, is expired."""
        if self.expires_at is None:
            return True
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return expires_at <= (now or datetime.now(UTC))


@dataclass(frozen=True)
class AuditEntry:
    """One terminal job outcome written to the audit log."""

    tenant_id: str
    target_id: str
    user_id: str
    job_id: str
    action_name: str
    success: bool
    params: dict[str, Any]
    duration_secs: float
    message: str
    reason: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class CredentialSource(Protocol):
    async def get(self, credential_ref: str) -> StoredCredential | None: ...


class SessionStore(Protocol):
    async def get_active_session(
        self, user_id: str, credential_id: str
    ) -> PersistedSession | None: ...

    async def save_session(
        self,
        user_id: str,
        credential_id: str,
        session_data: dict[str, Any],
        expires_at: datetime | None,
    ) -> int: ...

    async def deactivate_sessions(self, user_id: str, credential_id: str) -> int: ...


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> int: ...


class CaptchaLog(Protocol):
    async def create(
        self,
        image_path: str | None,
        model_response: str | None,
        status: CaptchaStatus = CaptchaStatus.PENDING,
    ) -> int: ...

    async def update_status(self, record_id: int, status: CaptchaStatus) -> None: ...
