"""
Table models for credentials, sessions, audit rows and captcha logs.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def _now() -> datetime:
    return datetime.now(UTC)


class CredentialModel(Base):
    """Encrypted login details for a target account."""

    __tablename__ = "credentials"

    id = Column(String(128), primary_key=True)
    tenant_id = Column(String(128), nullable=False, index=True)
    target_id = Column(String(128), nullable=False, index=True)
    target_name = Column(String(255), nullable=False)
    login_url = Column(Text, nullable=False)
    dashboard_url = Column(Text, nullable=True)
    encrypted_username = Column(Text, nullable=True)
    encrypted_password = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)


class SessionModel(Base):
    """Captured cookies for a (user, credential) pair."""

    __tablename__ = "sessions"
    __table_args__ = (
        Index("ix_sessions_owner_active", "user_id", "credential_id", "is_active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(128), nullable=False)
    credential_id = Column(String(128), nullable=False)
    session_token = Column(String(128), nullable=False)
    session_data = Column(JSON, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)


class AuditLogModel(Base):
    """Terminal outcome of one job."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    tenant_id = Column(String(128), nullable=False, index=True)
    target_id = Column(String(128), nullable=False, index=True)
    user_id = Column(String(128), nullable=False)
    job_id = Column(String(255), nullable=False, index=True)
    action = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False)  # success, fail
    reason = Column(String(32), nullable=True)
    inputs = Column(JSON, nullable=True)
    execution_time_secs = Column(Float, nullable=False, default=0.0)
    message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now, index=True)


class CaptchaLogModel(Base):
    """One captcha image and the vision model's reading of it."""

    __tablename__ = "captcha_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    image_path = Column(Text, nullable=True)
    api_response = Column(Text, nullable=True)
    api_status = Column(String(16), nullable=False, default="pending")  # pending, success, fail
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=True)
