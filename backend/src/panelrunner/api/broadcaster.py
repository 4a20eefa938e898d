"""
WebSocket fan-out of job updates and live screenshots.

Viewers subscribe to a tenant and optionally one target; everything is
filtered server-side so a viewer never sees another tenant's traffic.
Nothing is persisted or replayed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import secrets
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from fastapi import WebSocket, WebSocketDisconnect

if TYPE_CHECKING:
    from panelrunner.orchestrator.models import Job

logger = structlog.get_logger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 30.0
STALE_AFTER_SECONDS = 90.0
MAX_CONNECTION_AGE_SECONDS = 24 * 60 * 60
SEND_TIMEOUT_SECONDS = 5.0


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_session_id() -> str:
    return f"session_{_now_ms()}_{secrets.token_hex(5)}"


@dataclass
class ViewerConnection:
    """One connected viewer and its subscription."""

    websocket: WebSocket
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str = field(default_factory=new_session_id)
    tenant_id: str | None = None
    target_id: str | None = None
    connected_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)

    def wants(self, tenant_id: str, target_id: str) -> bool:
        if self.tenant_id is None or self.tenant_id != tenant_id:
            return False
        return self.target_id is None or self.target_id == target_id


class StatusBroadcaster:
    """
    Manages viewer connections.

    Features:
    - Tenant/target subscriptions
    - Job lifecycle and screenshot fan-out
    - Heartbeats with stale and max-age eviction
    - Ping/pong

    A viewer whose socket does not accept a frame within ``send_timeout``
    is dropped, so a stalled reader never holds up the job that published.
    """

    def __init__(
        self,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
        stale_after: float = STALE_AFTER_SECONDS,
        max_age: float = MAX_CONNECTION_AGE_SECONDS,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
    ) -> None:
        self._heartbeat_interval = heartbeat_interval
        self._stale_after = stale_after
        self._max_age = max_age
        self._send_timeout = send_timeout
        self._connections: dict[str, ViewerConnection] = {}
        self._heartbeat_task: asyncio.Task[None] | None = None
        self._log = logger.bind(component="broadcaster")

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def start(self) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="ws-heartbeat")

    async def stop(self) -> None:
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._heartbeat_task
            self._heartbeat_task = None
        await self.close_all()

    async def connect(self, websocket: WebSocket) -> ViewerConnection:
        """Accept a socket, register it and send the connection message."""
        await websocket.accept()
        conn = ViewerConnection(websocket=websocket)
        self._connections[conn.id] = conn
        self._log.info("Viewer connected", connection_id=conn.id, viewers=len(self._connections))
        await self._send(
            conn,
            {"type": "connection", "connectionId": conn.id, "sessionId": conn.session_id},
        )
        return conn

    def disconnect(self, conn: ViewerConnection) -> None:
        if self._connections.pop(conn.id, None) is not None:
            self._log.info("Viewer disconnected", connection_id=conn.id)

    async def serve(self, websocket: WebSocket) -> None:
        """Handle one viewer until it goes away."""
        conn = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(conn, raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.disconnect(conn)

    async def handle_message(self, conn: ViewerConnection, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self._send(conn, {"type": "error", "error": "Invalid JSON"})
            return
        if not isinstance(message, dict):
            await self._send(conn, {"type": "error", "error": "Expected a JSON object"})
            return

        kind = message.get("type")
        conn.last_heartbeat = time.time()

        if kind in ("subscribe", "auth"):
            tenant_id = message.get("tenantId")
            if not tenant_id:
                await self._send(conn, {"type": "error", "error": "tenantId is required"})
                return
            conn.tenant_id = str(tenant_id)
            target_id = message.get("targetId")
            conn.target_id = str(target_id) if target_id else None
            self._log.info(
                "Viewer subscribed",
                connection_id=conn.id,
                tenant_id=conn.tenant_id,
                target_id=conn.target_id,
            )
            await self._send(
                conn,
                {"type": "subscribed", "tenantId": conn.tenant_id, "targetId": conn.target_id},
            )
        elif kind == "ping":
            await self._send(conn, {"type": "pong"})
        elif kind == "heartbeat":
            pass
        else:
            self._log.debug("Unknown viewer message", connection_id=conn.id, type=kind)

    async def publish_job_update(self, job: Job) -> None:
        view = job.view()
        payload: dict[str, Any] = {
            "type": "job_update",
            "jobId": job.id,
            "tenantId": job.tenant_id,
            "targetId": job.target_id,
            "actionName": job.action_name,
            "status": str(view.status),
            "progress": view.progress,
            "message": view.message,
        }
        if view.result is not None:
            payload["result"] = view.result
        if view.reason is not None:
            payload["reason"] = str(view.reason)
        await self._fan_out(job.tenant_id, job.target_id, payload)

    async def publish_screenshot(self, job: Job, data: str) -> None:
        await self._fan_out(
            job.tenant_id,
            job.target_id,
            {
                "type": "screenshot",
                "data": data,
                "jobId": job.id,
                "tenantId": job.tenant_id,
                "targetId": job.target_id,
                "actionName": job.action_name,
            },
        )

    async def publish_log(self, job: Job, line: str) -> None:
        """Send one progress line for the job's target to its viewers."""
        await self._fan_out(
            job.tenant_id,
            job.target_id,
            {
                "type": "log_update",
                "jobId": job.id,
                "tenantId": job.tenant_id,
                "targetId": job.target_id,
                "actionName": job.action_name,
                "currentLog": line,
            },
        )

    async def close_all(self) -> None:
        self._log.info("Closing all viewer connections", viewers=len(self._connections))
        for conn in list(self._connections.values()):
            await self._close(conn)

    async def sweep(self) -> None:
        """Drop stale or expired viewers and heartbeat the rest."""
        now = time.time()
        for conn in list(self._connections.values()):
            if now - conn.last_heartbeat > self._stale_after:
                self._log.info("Dropping stale viewer", connection_id=conn.id)
                await self._close(conn)
            elif now - conn.connected_at > self._max_age:
                self._log.info("Dropping expired viewer", connection_id=conn.id)
                await self._close(conn)
            else:
                await self._send(conn, {"type": "heartbeat"})

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self._heartbeat_interval)
            await self.sweep()

    async def _fan_out(self, tenant_id: str, target_id: str, payload: dict[str, Any]) -> None:
        sends = [
            self._send(conn, {**payload, "sessionId": conn.session_id})
            for conn in list(self._connections.values())
            if conn.wants(tenant_id, target_id)
        ]
        if sends:
            await asyncio.gather(*sends)

    async def _send(self, conn: ViewerConnection, payload: dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(
                conn.websocket.send_json({**payload, "timestamp": _now_ms()}),
                timeout=self._send_timeout,
            )
        except asyncio.TimeoutError:
            self._log.warning(
                "Viewer not reading, dropping",
                connection_id=conn.id,
                timeout_seconds=self._send_timeout,
            )
            await self._close(conn)
        except Exception as e:
            self._log.warning("Failed to send to viewer", connection_id=conn.id, error=str(e))
            self.disconnect(conn)

    async def _close(self, conn: ViewerConnection) -> None:
        self.disconnect(conn)
        try:
            await asyncio.wait_for(conn.websocket.close(), timeout=self._send_timeout)
        except Exception as e:
            self._log.debug("Error closing viewer socket", connection_id=conn.id, error=str(e))
