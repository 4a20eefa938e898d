"""
Unit tests for the status broadcaster.

Tests cover:
- Connection handshake
- Tenant/target filtering of job updates and screenshots
- Ping/pong and heartbeat eviction
"""

from __future__ import annotations

import asyncio
import json
import time
from unittest.mock import AsyncMock, MagicMock

import pytest

from panelrunner.api.broadcaster import StatusBroadcaster, ViewerConnection
from panelrunner.orchestrator.models import Job, JobStatus


def make_job(tenant: str = "tenant-a", target: str = "t1") -> Job:
    return Job(
        id=f"recharge-{tenant}-{target}-1-abc",
        tenant_id=tenant,
        target_id=target,
        action_name="recharge",
        requester_id="u",
        credential_ref="c",
        status=JobStatus.ACTIVE,
        progress=20,
    )


def sent_types(websocket: MagicMock) -> list[str]:
    return [call.args[0]["type"] for call in websocket.send_json.await_args_list]


def new_socket() -> MagicMock:
    websocket = MagicMock()
    websocket.accept = AsyncMock()
    websocket.send_json = AsyncMock()
    websocket.close = AsyncMock()
    return websocket


async def subscribe(
    broadcaster: StatusBroadcaster,
    websocket: MagicMock,
    tenant: str,
    target: str | None = None,
) -> ViewerConnection:
    conn = await broadcaster.connect(websocket)
    message = {"type": "subscribe", "tenantId": tenant}
    if target:
        message["targetId"] = target
    await broadcaster.handle_message(conn, json.dumps(message))
    return conn


class TestConnection:
    """Tests for the connection handshake."""

    @pytest.mark.asyncio
    async def test_connection_message(self, mock_websocket) -> None:
        """Test the first frame carries the connection and session ids."""
        broadcaster = StatusBroadcaster()
        conn = await broadcaster.connect(mock_websocket)

        mock_websocket.accept.assert_awaited_once()
        payload = mock_websocket.send_json.await_args.args[0]
        assert payload["type"] == "connection"
        assert payload["sessionId"] == conn.session_id
        assert payload["sessionId"].startswith("session_")
        assert isinstance(payload["timestamp"], int)
        assert broadcaster.connection_count == 1

    @pytest.mark.asyncio
    async def test_ping_pong(self, mock_websocket) -> None:
        """Test a ping is answered with a pong."""
        broadcaster = StatusBroadcaster()
        conn = await broadcaster.connect(mock_websocket)

        await broadcaster.handle_message(conn, '{"type": "ping"}')

        assert sent_types(mock_websocket)[-1] == "pong"

    @pytest.mark.asyncio
    async def test_invalid_json_gets_error(self, mock_websocket) -> None:
        """Test malformed input gets an error frame and keeps the connection."""
        broadcaster = StatusBroadcaster()
        conn = await broadcaster.connect(mock_websocket)

        await broadcaster.handle_message(conn, "not json")

        assert sent_types(mock_websocket)[-1] == "error"
        assert broadcaster.connection_count == 1


class TestFiltering:
    """Tests for server-side subscription filtering."""

    @pytest.mark.asyncio
    async def test_job_update_only_to_matching_tenant(self) -> None:
        """Test job updates reach only viewers of the job's tenant."""
        broadcaster = StatusBroadcaster()
        viewer_a, viewer_b = new_socket(), new_socket()
        await subscribe(broadcaster, viewer_a, "tenant-a")
        await subscribe(broadcaster, viewer_b, "tenant-b")

        await broadcaster.publish_job_update(make_job("tenant-a"))

        assert "job_update" in sent_types(viewer_a)
        assert "job_update" not in sent_types(viewer_b)

        update = viewer_a.send_json.await_args.args[0]
        assert update["status"] == "active"
        assert update["progress"] == 20
        assert update["tenantId"] == "tenant-a"

    @pytest.mark.asyncio
    async def test_screenshot_filtered_by_target(self) -> None:
        """Test screenshots reach tenant-wide viewers and viewers of that target only."""
        broadcaster = StatusBroadcaster()
        t1_viewer, t2_viewer, all_viewer = new_socket(), new_socket(), new_socket()
        await subscribe(broadcaster, t1_viewer, "tenant-a", "t1")
        await subscribe(broadcaster, t2_viewer, "tenant-a", "t2")
        await subscribe(broadcaster, all_viewer, "tenant-a")

        await broadcaster.publish_screenshot(make_job("tenant-a", "t1"), "aGVsbG8=")

        assert "screenshot" in sent_types(t1_viewer)
        assert "screenshot" not in sent_types(t2_viewer)
        assert "screenshot" in sent_types(all_viewer)

        frame = t1_viewer.send_json.await_args.args[0]
        assert frame["data"] == "aGVsbG8="
        assert frame["actionName"] == "recharge"
        assert frame["jobId"] == make_job("tenant-a", "t1").id

    @pytest.mark.asyncio
    async def test_unsubscribed_viewer_gets_nothing(self, mock_websocket) -> None:
        """Test a viewer that never subscribed receives no job traffic."""
        broadcaster = StatusBroadcaster()
        await broadcaster.connect(mock_websocket)

        await broadcaster.publish_job_update(make_job())

        assert sent_types(mock_websocket) == ["connection"]

    @pytest.mark.asyncio
    async def test_failed_update_carries_reason(self) -> None:
        """Test failed updates include the failure reason and message."""
        broadcaster = StatusBroadcaster()
        viewer = new_socket()
        await subscribe(broadcaster, viewer, "tenant-a")
        job = make_job()
        job.status = JobStatus.FAILED
        job.message = "Job timed out after 60 seconds"
        job.failure_reason = "timeout"  # type: ignore[assignment]

        await broadcaster.publish_job_update(job)

        update = viewer.send_json.await_args.args[0]
        assert update["reason"] == "timeout"
        assert update["message"] == "Job timed out after 60 seconds"

    @pytest.mark.asyncio
    async def test_broken_socket_is_dropped(self) -> None:
        """Test a send error removes the viewer."""
        broadcaster = StatusBroadcaster()
        viewer = new_socket()
        await subscribe(broadcaster, viewer, "tenant-a")
        viewer.send_json.side_effect = RuntimeError("closed")

        await broadcaster.publish_job_update(make_job())

        assert broadcaster.connection_count == 0


class TestHeartbeat:
    """Tests for heartbeat sweeping."""

    @pytest.mark.asyncio
    async def test_sweep_sends_heartbeat(self, mock_websocket) -> None:
        """Test the sweep heartbeats live viewers."""
        broadcaster = StatusBroadcaster()
        await broadcaster.connect(mock_websocket)

        await broadcaster.sweep()

        assert sent_types(mock_websocket)[-1] == "heartbeat"

    @pytest.mark.asyncio
    async def test_sweep_drops_stale_viewer(self, mock_websocket) -> None:
        """Test a viewer silent past the stale limit is closed."""
        broadcaster = StatusBroadcaster(stale_after=90)
        conn = await broadcaster.connect(mock_websocket)
        conn.last_heartbeat = time.time() - 120

        await broadcaster.sweep()

        assert broadcaster.connection_count == 0
        mock_websocket.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_drops_old_viewer(self, mock_websocket) -> None:
        """Test a connection older than the maximum age is closed."""
        broadcaster = StatusBroadcaster(max_age=3600)
        conn = await broadcaster.connect(mock_websocket)
        conn.connected_at = time.time() - 7200

        await broadcaster.sweep()

        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_client_heartbeat_refreshes(self, mock_websocket) -> None:
        """Test a client heartbeat keeps the viewer alive."""
        broadcaster = StatusBroadcaster(stale_after=90)
        conn = await broadcaster.connect(mock_websocket)
        conn.last_heartbeat = time.time() - 120

        await broadcaster.handle_message(conn, '{"type": "heartbeat"}')
        await broadcaster.sweep()

        assert broadcaster.connection_count == 1


async def never_returns(*args, **kwargs) -> None:
    await asyncio.Event().wait()


class TestStalledViewer:
    """Tests for viewers that stop reading."""

    @pytest.mark.asyncio
    async def test_publish_returns_and_drops_stalled_viewer(self) -> None:
        """Test a send that never completes is cut off and the viewer removed."""
        broadcaster = StatusBroadcaster(send_timeout=0.05)
        stalled, healthy = new_socket(), new_socket()
        await subscribe(broadcaster, stalled, "tenant-a")
        await subscribe(broadcaster, healthy, "tenant-a")
        stalled.send_json.side_effect = never_returns

        await asyncio.wait_for(broadcaster.publish_job_update(make_job()), timeout=1.0)

        assert broadcaster.connection_count == 1
        assert "job_update" in sent_types(healthy)
        stalled.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_sweep_evicts_stalled_viewer(self) -> None:
        """Test the heartbeat sweep is not blocked by a stalled socket."""
        broadcaster = StatusBroadcaster(send_timeout=0.05)
        viewer = new_socket()
        await subscribe(broadcaster, viewer, "tenant-a")
        viewer.send_json.side_effect = never_returns

        await asyncio.wait_for(broadcaster.sweep(), timeout=1.0)

        assert broadcaster.connection_count == 0

    @pytest.mark.asyncio
    async def test_close_that_hangs_is_abandoned(self) -> None:
        """Test closing a socket whose close never completes still finishes."""
        broadcaster = StatusBroadcaster(send_timeout=0.05)
        viewer = new_socket()
        await subscribe(broadcaster, viewer, "tenant-a")
        viewer.send_json.side_effect = never_returns
        viewer.close.side_effect = never_returns

        await asyncio.wait_for(broadcaster.close_all(), timeout=1.0)

        assert broadcaster.connection_count == 0


class TestLogUpdates:
    """Tests for per-target progress lines."""

    @pytest.mark.asyncio
    async def test_log_line_reaches_target_viewers(self) -> None:
        """Test log_update frames follow the same tenant/target filter as screenshots."""
        broadcaster = StatusBroadcaster()
        t1_viewer, t2_viewer, other_tenant = new_socket(), new_socket(), new_socket()
        await subscribe(broadcaster, t1_viewer, "tenant-a", "t1")
        await subscribe(broadcaster, t2_viewer, "tenant-a", "t2")
        await subscribe(broadcaster, other_tenant, "tenant-b")

        await broadcaster.publish_log(make_job("tenant-a", "t1"), "Session expired, logging in...")

        frame = t1_viewer.send_json.await_args.args[0]
        assert frame["type"] == "log_update"
        assert frame["currentLog"] == "Session expired, logging in..."
        assert frame["actionName"] == "recharge"
        assert frame["targetId"] == "t1"
        assert "log_update" not in sent_types(t2_viewer)
        assert "log_update" not in sent_types(other_tenant)
