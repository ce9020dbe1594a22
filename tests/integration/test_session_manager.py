"""Integration tests for the SessionManager registry."""

import asyncio
from contextlib import aclosing, suppress
from datetime import timedelta

import httpx
import pytest

from envoy.api_server import APIServer
from envoy.config import AgentConfig
from envoy.constants import PROTOCOL_VERSION
from envoy.core.errors import ProcessSpawnFailed, RemoteConnectionError, SessionNotFound
from envoy.core.models import CLIType, SessionEventKind, SessionScope, SessionStatus
from envoy.core.session_manager import SessionManager, filter_sessions, group_by_device, load_or_create_device_id

PEER_DEVICE = {"id": "peer-id", "name": "Peer", "platform": "Linux", "version": "6"}


def handshake_response():
    return httpx.Response(200, json={"protocol": PROTOCOL_VERSION, "device": PEER_DEVICE})


class EventRecorder:
    """Observe a manager's registry events from a background task."""

    def __init__(self, manager):
        self.manager = manager
        self.events = []
        self._task = None

    async def __aenter__(self):
        self._task = asyncio.create_task(self._run())
        await asyncio.sleep(0)
        return self

    async def __aexit__(self, *exc_info):
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task

    async def _run(self):
        async for event in self.manager.observe_sessions():
            self.events.append(event)

    async def wait_for(self, count):
        async def _poll():
            while len(self.events) < count:
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_poll(), timeout=2)
        return self.events


@pytest.fixture
async def manager(shell_config):
    manager = SessionManager(shell_config)
    yield manager
    await manager.shutdown(timeout=1.0)


@pytest.fixture
async def peer(shell_config):
    """A second device whose API is reachable in-process."""
    peer_manager = SessionManager(shell_config, device_id="peer-device", device_name="Peer Box")
    yield peer_manager
    await peer_manager.shutdown(timeout=1.0)


# ==================== Local sessions ====================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_session_emits_lifecycle_events(manager):
    async with EventRecorder(manager) as recorder:
        session = await manager.create_session("task-1", CLIType.CODEX, "echo hi")
        created, running, completed = await recorder.wait_for(3)

    assert manager.get_session(session.id) is session
    assert created.kind == SessionEventKind.SESSION_CREATED
    assert created.session.status == SessionStatus.PENDING
    assert running.kind == SessionEventKind.SESSION_UPDATED
    assert running.session.status == SessionStatus.RUNNING
    assert completed.session.status == SessionStatus.COMPLETED
    assert completed.session_id == session.id


@pytest.mark.integration
@pytest.mark.asyncio
async def test_lookup(manager):
    session = await manager.create_session("task-1", CLIType.CODEX, "true")

    assert manager.get_session(session.id) is session
    assert manager.get_session("unknown") is None
    with pytest.raises(SessionNotFound):
        manager.require_session("unknown")
    await session.wait()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_spawn_failure_stays_registered_as_failed(shell_config):
    shell_config.agents["gemini-cli"] = AgentConfig("Gemini CLI", "/nonexistent/gemini", ["{prompt}"])
    manager = SessionManager(shell_config)

    with pytest.raises(ProcessSpawnFailed) as exc_info:
        await manager.create_session("task-1", CLIType.GEMINI_CLI, "hello")

    failed = manager.get_session(exc_info.value.session_id)
    assert failed is not None
    info = await failed.get_info()
    assert info.status == SessionStatus.FAILED
    assert info.exit_code == 127
    await manager.shutdown(timeout=1.0)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_local_listing_is_newest_first(manager):
    first = await manager.create_session("task-1", CLIType.CODEX, "true")
    await asyncio.sleep(0.01)
    second = await manager.create_session("task-2", CLIType.CODEX, "true")

    listed = await manager.list_local_sessions()

    assert [info.id for info in listed] == [second.id, first.id]
    await asyncio.gather(first.wait(), second.wait())


@pytest.mark.integration
@pytest.mark.asyncio
async def test_terminate_session(manager):
    session = await manager.create_session("task-1", CLIType.CODEX, "sleep 30")

    async with EventRecorder(manager) as recorder:
        assert await manager.terminate_session(session.id) is True
        (event,) = await recorder.wait_for(1)

    assert event.kind == SessionEventKind.SESSION_TERMINATED
    assert session.status == SessionStatus.TERMINATED
    assert await manager.terminate_session("unknown") is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_cleanup_evicts_only_old_terminal_sessions(manager):
    done = await manager.create_session("task-1", CLIType.CODEX, "true")
    await done.wait()
    running = await manager.create_session("task-2", CLIType.CODEX, "sleep 30")

    assert manager.cleanup_old_sessions(timedelta(hours=1)) == []
    assert manager.cleanup_old_sessions(0) == [done.id]
    assert manager.get_session(done.id) is None
    assert manager.get_session(running.id) is running

    assert manager.remove_session(running.id) is True
    assert manager.remove_session(running.id) is False
    await running.terminate()


def test_device_id_is_persisted(isolated_state_dir, shell_config):
    first = SessionManager(shell_config)
    second = SessionManager(shell_config)

    assert first.device_id == second.device_id
    assert (isolated_state_dir / "device_id").read_text().strip() == first.device_id
    assert load_or_create_device_id(isolated_state_dir) == first.device_id
    assert first.device_name == "test-device"


def test_device_info(shell_config):
    manager = SessionManager(shell_config, device_id="fixed", device_name="Desk")

    device = manager.get_device_info()

    assert (device.id, device.name) == ("fixed", "Desk")
    assert device.platform


# ==================== Remote sessions ====================


@pytest.mark.integration
@pytest.mark.asyncio
async def test_list_all_sessions_merges_reachable_devices_and_skips_failures(manager, peer):
    local = await manager.create_session("local-task", CLIType.CODEX, "true")
    remote = await peer.create_session("remote-task", CLIType.CLAUDE_CODE, "echo remote")
    await asyncio.gather(local.wait(), remote.wait())

    await manager.connect_to_remote("peer", 8080, transport=httpx.ASGITransport(app=APIServer(peer).app))

    def failing_listing(request):
        if request.url.path == "/api/device":
            return handshake_response()
        raise httpx.ConnectError("Connection reset", request=request)

    async def hanging_listing(request):
        if request.url.path == "/api/device":
            return handshake_response()
        await asyncio.sleep(10)

    await manager.connect_to_remote("flaky", 8080, transport=httpx.MockTransport(failing_listing))
    await manager.connect_to_remote("stalled", 8080, transport=httpx.MockTransport(hanging_listing))

    sessions = await manager.list_all_sessions()

    assert {s.id for s in sessions} == {local.id, remote.id}
    by_id = {s.id: s for s in sessions}
    assert by_id[local.id].is_local
    assert by_id[remote.id].device_name == "Peer Box"
    assert by_id[remote.id].device_id == "peer-device"
    assert not by_id[remote.id].is_local

    proxy = manager.get_session(remote.id)
    assert proxy is not None
    assert await proxy.get_output_buffer() == b"remote\n"

    assert [s.id for s in filter_sessions(sessions, SessionScope.LOCAL)] == [local.id]
    assert [s.id for s in filter_sessions(sessions, SessionScope.REMOTE)] == [remote.id]
    assert len(filter_sessions(sessions, SessionScope.ALL)) == 2
    groups = group_by_device(sessions)
    assert sorted(name for _, name, _ in groups) == ["Peer Box", "test-device"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_list_all_sessions_skips_peers_with_garbage_listings(manager):
    local = await manager.create_session("local-task", CLIType.CODEX, "true")
    await local.wait()

    def garbage_listing(request):
        if request.url.path == "/api/device":
            return handshake_response()
        return httpx.Response(200, json=[1])

    def broken_listing(request):
        if request.url.path == "/api/device":
            return handshake_response()
        raise RuntimeError("handler blew up")

    await manager.connect_to_remote("garbage", 8080, transport=httpx.MockTransport(garbage_listing))
    await manager.connect_to_remote("broken", 8080, transport=httpx.MockTransport(broken_listing))

    sessions = await manager.list_all_sessions()

    assert [s.id for s in sessions] == [local.id]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_remote_stream_through_registry(manager, peer):
    remote = await peer.create_session("remote-task", CLIType.CODEX, "echo one; echo two 1>&2; exit 4")
    await remote.wait()
    await manager.connect_to_remote("peer", transport=httpx.ASGITransport(app=APIServer(peer).app))
    await manager.list_all_sessions()

    proxy = manager.require_session(remote.id)
    async with aclosing(proxy.output_stream()) as events:
        received = [event async for event in events]

    assert b"".join(e.data or b"" for e in received) == await remote.get_output_buffer()
    assert received[-1].exit_code == 4
    assert proxy.status == SessionStatus.FAILED


@pytest.mark.integration
@pytest.mark.asyncio
async def test_reconnect_replaces_previous_connection(manager, peer):
    app = APIServer(peer).app
    first = await manager.connect_to_remote("peer", 8080, transport=httpx.ASGITransport(app=app))
    second = await manager.connect_to_remote("peer", 8080, transport=httpx.ASGITransport(app=app))

    assert manager.connections() == [second]
    assert not first.is_connected

    async with EventRecorder(manager) as recorder:
        assert await manager.disconnect_remote("peer", 8080) is True
        (event,) = await recorder.wait_for(1)
    assert event.kind == SessionEventKind.REMOTE_DISCONNECTED
    assert event.device.name == "Peer Box"
    assert await manager.disconnect_remote("peer", 8080) is False


@pytest.mark.integration
@pytest.mark.asyncio
async def test_protocol_mismatch_is_surfaced_without_retry(manager):
    attempts = 0

    def handler(request):
        nonlocal attempts
        attempts += 1
        return httpx.Response(200, json={"protocol": "something-else/2", "device": PEER_DEVICE})

    with pytest.raises(RemoteConnectionError) as exc_info:
        await manager.connect_to_remote("old-peer", transport=httpx.MockTransport(handler))

    assert exc_info.value.reason == "protocol-mismatch"
    assert attempts == 1
    assert manager.connections() == []


@pytest.mark.integration
@pytest.mark.asyncio
async def test_shutdown_terminates_running_sessions(shell_config):
    manager = SessionManager(shell_config)
    session = await manager.create_session("task-1", CLIType.CODEX, "sleep 30")

    await manager.shutdown(timeout=1.0)

    assert session.status == SessionStatus.TERMINATED
    assert manager.task_registry.task_count() == 0
