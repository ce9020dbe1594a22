"""HTTP connection to a peer Envoy instance.

A RemoteConnection talks to another device's API server (see envoy.api_server):
it performs the protocol handshake, enumerates the peer's sessions, and carries
the per-session calls made by RemoteSessionProxy (buffer, stream, input,
terminate). All calls are bounded by httpx timeouts.

Session listing is single-flight: concurrent callers share one in-flight probe
through asyncio.shield, so one caller giving up does not cancel the probe for
the others.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import httpx

from envoy.constants import (
    DEFAULT_REMOTE_PORT,
    PROTOCOL_VERSION,
    REMOTE_CONNECT_TIMEOUT,
    REMOTE_REQUEST_TIMEOUT,
    SSE_MEDIA_TYPE,
)
from envoy.core.errors import (
    ProcessSpawnFailed,
    RemoteConnectionError,
    RemoteUnreachable,
    SessionNotFound,
    SessionNotInteractive,
)
from envoy.core.models import ControlCharacter, DeviceInfo, SessionInfo, SessionOutput
from envoy.core.task_registry import TaskRegistry
from envoy.transport.remote_session import RemoteSessionProxy
from envoy.transport.sse import iter_events

logger = logging.getLogger(__name__)

DEVICE_HEADER = "X-Envoy-Device"


def format_address(host: str, port: int) -> str:
    if ":" in host and not host.startswith("["):
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def parse_address(address: str, default_port: int = DEFAULT_REMOTE_PORT) -> tuple[str, int]:
    """Split "host[:port]" (IPv6 hosts in brackets) into host and port."""
    address = address.strip()
    if address.startswith("["):
        host, _, rest = address[1:].partition("]")
        port_str = rest.lstrip(":")
        return host, int(port_str) if port_str else default_port
    if address.count(":") == 1:
        host, port_str = address.split(":")
        return host, int(port_str)
    return address, default_port


class RemoteConnection:  # pylint: disable=too-many-instance-attributes  # Connection owns client, proxies and probe state
    """Connection to a remote session server."""

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_REMOTE_PORT,
        *,
        device_id: str = "",
        connect_timeout: float = REMOTE_CONNECT_TIMEOUT,
        request_timeout: float = REMOTE_REQUEST_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.device_id = device_id
        self.connect_timeout = connect_timeout
        self.request_timeout = request_timeout
        self._transport = transport
        self._tasks = task_registry or TaskRegistry()
        self._client: Optional[httpx.AsyncClient] = None
        self._remote_device: Optional[DeviceInfo] = None
        self._proxies: dict[str, RemoteSessionProxy] = {}
        self._list_task: Optional[asyncio.Task[list[SessionInfo]]] = None

    @property
    def address(self) -> str:
        return format_address(self.host, self.port)

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    @property
    def is_connected(self) -> bool:
        return self._client is not None and self._remote_device is not None

    @property
    def remote_device(self) -> Optional[DeviceInfo]:
        return self._remote_device

    # ==================== Connection lifecycle ====================

    async def connect(self) -> DeviceInfo:
        """Open the HTTP client and perform the protocol handshake.

        Raises:
            RemoteConnectionError: timeout, refused, or protocol-mismatch
        """
        if self.is_connected and self._remote_device:
            return self._remote_device

        client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.request_timeout, connect=self.connect_timeout),
            transport=self._transport,
            headers={DEVICE_HEADER: self.device_id} if self.device_id else None,
        )
        try:
            device = await asyncio.wait_for(self._handshake(client), timeout=self.connect_timeout)
        except RemoteConnectionError:
            await client.aclose()
            raise
        except asyncio.TimeoutError as e:
            await client.aclose()
            raise RemoteConnectionError(self.host, self.port, "timeout", "handshake timed out") from e
        except httpx.TimeoutException as e:
            await client.aclose()
            raise RemoteConnectionError(self.host, self.port, "timeout", str(e) or type(e).__name__) from e
        except (httpx.ConnectError, OSError) as e:
            await client.aclose()
            raise RemoteConnectionError(self.host, self.port, "refused", str(e) or type(e).__name__) from e
        except httpx.HTTPError as e:
            await client.aclose()
            raise RemoteConnectionError(self.host, self.port, "refused", str(e) or type(e).__name__) from e

        self._client = client
        self._remote_device = device
        logger.info("Connected to remote device %s (%s) at %s", device.name, device.id[:8], self.address)
        return device

    async def _handshake(self, client: httpx.AsyncClient) -> DeviceInfo:
        response = await client.get("/api/device")
        if response.status_code != 200:
            raise RemoteConnectionError(
                self.host, self.port, "protocol-mismatch", f"handshake returned HTTP {response.status_code}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise RemoteConnectionError(self.host, self.port, "protocol-mismatch", "handshake is not JSON") from e

        protocol = body.get("protocol") if isinstance(body, dict) else None
        if protocol != PROTOCOL_VERSION:
            raise RemoteConnectionError(
                self.host,
                self.port,
                "protocol-mismatch",
                f"expected {PROTOCOL_VERSION}, peer speaks {protocol!r}",
            )
        try:
            return DeviceInfo.from_dict(body["device"])
        except (KeyError, TypeError) as e:
            raise RemoteConnectionError(self.host, self.port, "protocol-mismatch", "handshake lacks device info") from e

    async def disconnect(self) -> None:
        """End every proxy view and close the HTTP client."""
        proxies = list(self._proxies.values())
        self._proxies.clear()
        for proxy in proxies:
            await proxy.disconnect()
        self._list_task = None

        client, self._client = self._client, None
        self._remote_device = None
        if client:
            await client.aclose()
            logger.info("Disconnected from remote device at %s", self.address)

    # ==================== Session enumeration ====================

    async def list_remote_sessions(self) -> list[SessionInfo]:
        """Enumerate the peer's sessions.

        Raises:
            RemoteUnreachable: If the peer cannot be reached or answers garbage
        """
        task = self._list_task
        if task is None or task.done():
            task = self._tasks.spawn(self._fetch_sessions(), name=f"remote-list-{self.address}")
            self._list_task = task
        return await asyncio.shield(task)

    async def _fetch_sessions(self) -> list[SessionInfo]:
        body = await self._request_json("GET", "/api/sessions")
        if not isinstance(body, list):
            raise RemoteUnreachable(self.address, "session list is not a JSON array")
        if not all(isinstance(item, dict) for item in body):
            raise RemoteUnreachable(self.address, "session list entries must be objects")
        try:
            infos = [SessionInfo.from_dict(item) for item in body]
        except (KeyError, TypeError, ValueError) as e:
            raise RemoteUnreachable(self.address, f"malformed session list: {e}") from e

        for info in infos:
            proxy = self._proxies.get(info.id)
            if proxy:
                proxy.update_info(info)
        return infos

    def proxy_for(self, info: SessionInfo) -> RemoteSessionProxy:
        """Return the cached proxy for a listed session, creating it on first sight."""
        proxy = self._proxies.get(info.id)
        if proxy is None:
            proxy = RemoteSessionProxy(self, info, task_registry=self._tasks)
            self._proxies[info.id] = proxy
        return proxy

    def get_proxy(self, session_id: str) -> Optional[RemoteSessionProxy]:
        return self._proxies.get(session_id)

    def proxies(self) -> list[RemoteSessionProxy]:
        return list(self._proxies.values())

    async def attach_to_session(self, session_id: str) -> RemoteSessionProxy:
        """Create (or return) a proxy for one remote session.

        Raises:
            SessionNotFound: If the peer does not know the session
        """
        info = await self.get_session_info(session_id)
        proxy = self.proxy_for(info)
        proxy.update_info(info)
        return proxy

    # ==================== Per-session calls ====================

    async def get_session_info(self, session_id: str) -> SessionInfo:
        body = await self._request_json("GET", f"/api/sessions/{session_id}", session_id=session_id)
        return SessionInfo.from_dict(body)  # type: ignore[arg-type]

    async def create_session(
        self,
        *,
        cli: str,
        prompt: str,
        task_id: Optional[str] = None,
        working_directory: Optional[str] = None,
    ) -> RemoteSessionProxy:
        payload: dict[str, object] = {"cli": cli, "prompt": prompt}
        if task_id:
            payload["task_id"] = task_id
        if working_directory:
            payload["working_directory"] = working_directory
        body = await self._request_json("POST", "/api/sessions", json=payload)
        return self.proxy_for(SessionInfo.from_dict(body))  # type: ignore[arg-type]

    async def get_buffer(self, session_id: str) -> bytes:
        body = await self._request_json("GET", f"/api/sessions/{session_id}/buffer", session_id=session_id)
        return base64.b64decode(str(body.get("data", "")))  # type: ignore[union-attr]

    async def send_input(self, session_id: str, data: str | bytes) -> None:
        if isinstance(data, bytes):
            payload = {"data": base64.b64encode(data).decode("ascii")}
        else:
            payload = {"text": data}
        await self._request_json("POST", f"/api/sessions/{session_id}/input", json=payload, session_id=session_id)

    async def send_control(self, session_id: str, character: ControlCharacter) -> None:
        await self._request_json(
            "POST", f"/api/sessions/{session_id}/control", json={"key": character.value}, session_id=session_id
        )

    async def terminate_session(self, session_id: str) -> SessionInfo:
        body = await self._request_json("POST", f"/api/sessions/{session_id}/terminate", session_id=session_id)
        return SessionInfo.from_dict(body)  # type: ignore[arg-type]

    async def stream_events(self, session_id: str) -> AsyncIterator[SessionOutput]:
        """Yield the remote session's events (full replay, then live tail).

        Raises:
            httpx.HTTPError: On transport failures mid-stream
            SessionNotFound: If the peer does not know the session
        """
        async with self._open_stream(session_id) as response:
            async for payload in iter_events(response.aiter_lines()):
                yield SessionOutput.from_dict(payload)

    @asynccontextmanager
    async def _open_stream(self, session_id: str) -> AsyncIterator[httpx.Response]:
        client = self._require_client()
        # Live tails have no read deadline; connect stays bounded.
        timeout = httpx.Timeout(None, connect=self.connect_timeout)
        async with client.stream(
            "GET",
            f"/api/sessions/{session_id}/stream",
            headers={"Accept": SSE_MEDIA_TYPE},
            timeout=timeout,
        ) as response:
            if response.status_code == 404:
                raise SessionNotFound(session_id)
            response.raise_for_status()
            yield response

    # ==================== Private ====================

    def _require_client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RemoteUnreachable(self.address, "not connected")
        return self._client

    async def _request_json(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict[str, object]] = None,
        session_id: Optional[str] = None,
    ) -> object:
        client = self._require_client()
        try:
            response = await client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise RemoteUnreachable(self.address, str(e) or type(e).__name__) from e

        if response.status_code == 404 and session_id:
            raise SessionNotFound(session_id)
        if response.status_code == 409 and session_id:
            raise SessionNotInteractive(session_id, _error_detail(response))
        if response.status_code == 422:
            spawn_failure = _spawn_failure(response)
            if spawn_failure:
                raise spawn_failure
        if response.status_code >= 400:
            raise RemoteUnreachable(self.address, f"HTTP {response.status_code}: {_error_detail(response)}")
        try:
            return response.json()
        except ValueError as e:
            raise RemoteUnreachable(self.address, "response is not JSON") from e


def _spawn_failure(response: httpx.Response) -> Optional[ProcessSpawnFailed]:
    """Rebuild the peer's ProcessSpawnFailed from a 422 body, if that is what it is."""
    try:
        body = response.json()
    except ValueError:
        return None
    detail = body.get("detail") if isinstance(body, dict) else None
    if not isinstance(detail, dict) or "session_id" not in detail:
        return None
    return ProcessSpawnFailed(str(detail["session_id"]), str(detail.get("message", "")))


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, dict):
            return str(detail.get("status") or detail.get("message") or detail)
        if detail is not None:
            return str(detail)
    return str(body)
