"""
Repositories over the SQLAlchemy models.

Each repository opens its own short-lived session per call through
``DatabaseManager.session()``.
"""

from __future__ import annotations

import secrets
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import select, update

from panelrunner.storage.interfaces import (
    AuditEntry,
    CaptchaStatus,
    PersistedSession,
    StoredCredential,
)
from panelrunner.storage.models import (
    AuditLogModel,
    CaptchaLogModel,
    CredentialModel,
    SessionModel,
)

if TYPE_CHECKING:
    from panelrunner.auth.credential_cipher import CredentialCipher
    from panelrunner.storage.database import DatabaseManager

logger = structlog.get_logger(__name__)


class CredentialRepository:
    """Stores target credentials encrypted at rest."""

    def __init__(self, db_manager: DatabaseManager, cipher: CredentialCipher) -> None:
        self._db = db_manager
        self._cipher = cipher
        self._log = logger.bind(component="credential_repository")

    async def add(
        self,
        credential_ref: str,
        tenant_id: str,
        target_id: str,
        target_name: str,
        login_url: str,
        username: str | None,
        password: str | None,
        dashboard_url: str | None = None,
    ) -> str:
        async with self._db.session() as session:
            session.add(
                CredentialModel(
                    id=credential_ref,
                    tenant_id=tenant_id,
                    target_id=target_id,
                    target_name=target_name,
                    login_url=login_url,
                    dashboard_url=dashboard_url,
                    encrypted_username=self._cipher.encrypt_optional(username),
                    encrypted_password=self._cipher.encrypt_optional(password),
                )
            )

        self._log.info("Credential stored", credential_ref=credential_ref, target_id=target_id)
        return credential_ref

    async def get(self, credential_ref: str) -> StoredCredential | None:
        async with self._db.session() as session:
            row = await session.get(CredentialModel, credential_ref)
            if row is None:
                return None

            return StoredCredential(
                credential_ref=row.id,
                target_id=row.target_id,
                target_name=row.target_name,
                username=self._cipher.decrypt_optional(row.encrypted_username),
                password=self._cipher.decrypt_optional(row.encrypted_password),
                login_url=row.login_url,
                dashboard_url=row.dashboard_url,
            )


class SessionRepository:
    """
    Persisted browser sessions keyed by (user, credential).

    Reads apply lazy expiry: the newest active row wins, and if it has no
    expiry or an expiry in the past it is flagged inactive and not returned.
    """

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager
        self._log = logger.bind(component="session_repository")

    async def get_active_session(
        self,
        user_id: str,
        credential_id: str,
    ) -> PersistedSession | None:
        async with self._db.session() as session:
            result = await session.execute(
                select(SessionModel)
                .where(
                    SessionModel.user_id == user_id,
                    SessionModel.credential_id == credential_id,
                    SessionModel.is_active.is_(True),
                )
                .order_by(SessionModel.created_at.desc(), SessionModel.id.desc())
                .limit(1)
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None

            record = _to_session(row)
            if record.is_expired():
                row.is_active = False
                record.is_active = False
                self._log.info(
                    "Session expired",
                    session_id=row.id,
                    user_id=user_id,
                    credential_id=credential_id,
                    expires_at=record.expires_at.isoformat() if record.expires_at else None,
                )
                return None

            return record

    async def save_session(
        self,
        user_id: str,
        credential_id: str,
        session_data: dict[str, Any],
        expires_at: datetime | None,
    ) -> int:
        """Store a new current session, deactivating earlier ones for the pair."""
        async with self._db.session() as session:
            await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.user_id == user_id,
                    SessionModel.credential_id == credential_id,
                    SessionModel.is_active.is_(True),
                )
                .values(is_active=False)
            )
            row = SessionModel(
                user_id=user_id,
                credential_id=credential_id,
                session_token=secrets.token_hex(16),
                session_data=session_data,
                is_active=True,
                expires_at=expires_at,
                created_at=datetime.now(UTC),
            )
            session.add(row)
            await session.flush()
            session_id = row.id

        self._log.info(
            "Session saved",
            session_id=session_id,
            user_id=user_id,
            credential_id=credential_id,
            cookie_count=len(session_data.get("cookies", [])),
        )
        return session_id

    async def deactivate_sessions(self, user_id: str, credential_id: str) -> int:
        async with self._db.session() as session:
            result = await session.execute(
                update(SessionModel)
                .where(
                    SessionModel.user_id == user_id,
                    SessionModel.credential_id == credential_id,
                    SessionModel.is_active.is_(True),
                )
                .values(is_active=False)
            )
            count = result.rowcount or 0

        self._log.info(
            "Sessions deactivated",
            user_id=user_id,
            credential_id=credential_id,
            count=count,
        )
        return count


class AuditRepository:
    """Append-only log of terminal job outcomes."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager
        self._log = logger.bind(component="audit_repository")

    async def record(self, entry: AuditEntry) -> int:
        async with self._db.session() as session:
            row = AuditLogModel(
                tenant_id=entry.tenant_id,
                target_id=entry.target_id,
                user_id=entry.user_id,
                job_id=entry.job_id,
                action=entry.action_name,
                status="success" if entry.success else "fail",
                reason=entry.reason,
                inputs=entry.params,
                execution_time_secs=entry.duration_secs,
                message=entry.message,
                created_at=entry.created_at,
            )
            session.add(row)
            await session.flush()
            row_id = row.id

        self._log.debug("Audit row written", audit_id=row_id, job_id=entry.job_id)
        return row_id

    async def list_for_target(
        self,
        tenant_id: str,
        target_id: str,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AuditLogModel)
                .where(
                    AuditLogModel.tenant_id == tenant_id,
                    AuditLogModel.target_id == target_id,
                )
                .order_by(AuditLogModel.created_at.desc(), AuditLogModel.id.desc())
                .limit(limit)
            )
            return [
                {
                    "id": row.id,
                    "jobId": row.job_id,
                    "action": row.action,
                    "status": row.status,
                    "reason": row.reason,
                    "inputs": row.inputs,
                    "executionTimeSecs": row.execution_time_secs,
                    "message": row.message,
                    "createdAt": row.created_at.isoformat(),
                }
                for row in result.scalars().all()
            ]


class CaptchaLogRepository:
    """Observability log of captcha solves."""

    def __init__(self, db_manager: DatabaseManager) -> None:
        self._db = db_manager

    async def create(
        self,
        image_path: str | None,
        model_response: str | None,
        status: CaptchaStatus = CaptchaStatus.PENDING,
    ) -> int:
        async with self._db.session() as session:
            row = CaptchaLogModel(
                image_path=image_path,
                api_response=model_response,
                api_status=str(status),
            )
            session.add(row)
            await session.flush()
            return row.id

    async def update_status(self, record_id: int, status: CaptchaStatus) -> None:
        async with self._db.session() as session:
            await session.execute(
                update(CaptchaLogModel)
                .where(CaptchaLogModel.id == record_id)
                .values(api_status=str(status), updated_at=datetime.now(UTC))
            )

    async def get_status(self, record_id: int) -> CaptchaStatus | None:
        async with self._db.session() as session:
            row = await session.get(CaptchaLogModel, record_id)
            return CaptchaStatus(row.api_status) if row else None


def _to_session(row: SessionModel) -> PersistedSession:
    return PersistedSession(
        id=row.id,
        user_id=row.user_id,
        credential_id=row.credential_id,
        session_data=dict(row.session_data or {}),
        is_active=bool(row.is_active),
        expires_at=row.expires_at,
        created_at=row.created_at,
    )
