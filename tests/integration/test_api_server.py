"""Integration tests for the session API server."""

import asyncio
import base64
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from envoy.api_server import APIServer
from envoy.config import AgentConfig
from envoy.constants import PROTOCOL_VERSION
from envoy.core.models import CLIType, SessionStatus
from envoy.core.session_manager import SessionManager
from envoy.transport.remote_connection import RemoteConnection


@pytest.fixture
async def manager(shell_config):
    manager = SessionManager(shell_config, device_id="api-device", device_name="API Box")
    yield manager
    await manager.shutdown(timeout=1.0)


@pytest.fixture
async def client(manager):
    api = APIServer(manager, host="127.0.0.1", port=0)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api.app), base_url="http://test") as client:
        yield client


def sse_payloads(body: str) -> list[dict]:
    return [json.loads(line[len("data: ") :]) for line in body.splitlines() if line.startswith("data: ")]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_handshake(client):
    response = await client.get("/api/device")

    assert response.status_code == 200
    body = response.json()
    assert body["protocol"] == PROTOCOL_VERSION
    assert body["device"]["id"] == "api-device"
    assert body["device"]["name"] == "API Box"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_create_list_and_inspect(client, manager):
    response = await client.post("/api/sessions", json={"cli": "codex", "prompt": "echo api", "task_id": "t-1"})

    assert response.status_code == 201
    created = response.json()
    assert created["task_id"] == "t-1"
    assert created["status"] in ("running", "completed")

    await manager.get_local_session(created["id"]).wait()

    listed = (await client.get("/api/sessions")).json()
    assert [item["id"] for item in listed] == [created["id"]]

    info = (await client.get(f"/api/sessions/{created['id']}")).json()
    assert info["status"] == "completed"
    assert info["exit_code"] == 0

    buffer = (await client.get(f"/api/sessions/{created['id']}/buffer")).json()
    assert base64.b64decode(buffer["data"]) == b"api\n"
    assert buffer["size"] == 4


@pytest.mark.integration
@pytest.mark.asyncio
async def test_stream_replays_finished_session(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "echo out; echo err 1>&2; exit 2")
    await session.wait()

    response = await client.get(f"/api/sessions/{session.id}/stream")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    payloads = sse_payloads(response.text)
    assert payloads[-1] == {"type": "exit", "exit_code": 2}
    data = b"".join(base64.b64decode(p["data"]) for p in payloads if "data" in p)
    assert data == await session.get_output_buffer()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_unknown_session_is_404(client):
    for path in ("", "/buffer", "/stream"):
        assert (await client.get(f"/api/sessions/nope{path}")).status_code == 404
    assert (await client.post("/api/sessions/nope/terminate")).status_code == 404


@pytest.mark.integration
@pytest.mark.asyncio
async def test_input_and_control_on_running_session(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "read line; echo got:$line; head -c 1 | od -An -tx1")

    text = await client.post(f"/api/sessions/{session.id}/input", json={"text": "hello\n"})
    control = await client.post(f"/api/sessions/{session.id}/control", json={"key": "d"})
    await asyncio.wait_for(session.wait(), timeout=2)

    assert text.status_code == 200
    assert control.status_code == 200
    output = (await session.get_output_buffer()).split()
    assert output == [b"got:hello", b"04"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_binary_input(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "head -c 2 | od -An -tx1")

    response = await client.post(
        f"/api/sessions/{session.id}/input", json={"data": base64.b64encode(b"\x1b\x00").decode()}
    )
    await asyncio.wait_for(session.wait(), timeout=2)

    assert response.status_code == 200
    assert (await session.get_output_buffer()).split() == [b"1b", b"00"]


@pytest.mark.integration
@pytest.mark.asyncio
async def test_input_to_finished_session_is_409(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "true")
    await session.wait()

    response = await client.post(f"/api/sessions/{session.id}/input", json={"text": "late"})

    assert response.status_code == 409
    assert response.json()["detail"]["status"] == "completed"


@pytest.mark.integration
@pytest.mark.asyncio
async def test_request_validation(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "sleep 30")

    both = await client.post(f"/api/sessions/{session.id}/input", json={"text": "a", "data": "YQ=="})
    neither = await client.post(f"/api/sessions/{session.id}/input", json={})
    bad_key = await client.post(f"/api/sessions/{session.id}/control", json={"key": "x"})
    bad_b64 = await client.post(f"/api/sessions/{session.id}/input", json={"data": "***"})
    bad_cli = await client.post("/api/sessions", json={"cli": "cursor", "prompt": "hi"})

    assert [r.status_code for r in (both, neither, bad_key, bad_cli)] == [422, 422, 422, 422]
    assert bad_b64.status_code == 400
    await session.terminate()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_spawn_failure_is_422(shell_config):
    shell_config.agents["codex"] = AgentConfig("Codex", "/nonexistent/codex", ["{prompt}"])
    manager = SessionManager(shell_config)
    api = APIServer(manager)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=api.app), base_url="http://test") as client:
        response = await client.post("/api/sessions", json={"cli": "codex", "prompt": "hi"})

    assert response.status_code == 422
    session_id = response.json()["detail"]["session_id"]
    assert manager.get_local_session(session_id).status == SessionStatus.FAILED
    await manager.shutdown(timeout=1.0)


@pytest.mark.integration
@pytest.mark.asyncio
async def test_terminate_is_idempotent(client, manager):
    session = await manager.create_session("t-1", CLIType.CODEX, "sleep 30")

    first = await client.post(f"/api/sessions/{session.id}/terminate")
    second = await client.post(f"/api/sessions/{session.id}/terminate")

    assert first.json()["status"] == "terminated"
    assert second.json() == first.json()
    response = await client.get(f"/api/sessions/{session.id}/stream")
    assert sse_payloads(response.text)[-1] == {"type": "terminated"}


def test_health_with_test_client(shell_config):
    api = APIServer(SessionManager(shell_config))

    with TestClient(api.app) as client:
        assert client.get("/health").json() == {"status": "ok"}


@pytest.mark.integration
@pytest.mark.asyncio
async def test_uvicorn_server_round_trip(manager):
    """Start a real server on an ephemeral port and drive it with a RemoteConnection."""
    api = APIServer(manager, host="127.0.0.1", port=0)
    await api.start()
    try:
        port = api.bound_port
        assert port

        session = await manager.create_session("t-1", CLIType.CODEX, "echo over-the-wire")
        await session.wait()

        connection = RemoteConnection("127.0.0.1", port, device_id="client")
        device = await connection.connect()
        assert device.id == "api-device"

        infos = await connection.list_remote_sessions()
        proxy = connection.proxy_for(infos[0])
        events = []
        async for event in proxy.output_stream():
            events.append(event)

        assert b"".join(e.data or b"" for e in events) == b"over-the-wire\n"
        assert proxy.status == SessionStatus.COMPLETED
        await connection.disconnect()
    finally:
        await api.stop()
