"""Session registry: the single authority for "what sessions exist, where".

The SessionManager hosts local CLI sessions and keeps connections to remote
devices. Local handles and remote proxies share the SessionHandle protocol,
so lookups and listings never branch on locality except for display metadata.

Construct one SessionManager at startup and pass it to the API server / CLI;
there is no module-level instance.
"""

from __future__ import annotations

import asyncio
import logging
import platform
import socket
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import AsyncIterator, Iterable, Mapping, Optional

import httpx

from envoy.config import Config, config as default_config
from envoy.constants import DEFAULT_REMOTE_PORT
from envoy.core.cli_session import CLISession
from envoy.core.errors import ProcessSpawnFailed, RemoteConnectionError, RemoteUnreachable, SessionNotFound
from envoy.core.models import (
    CLIType,
    DeviceInfo,
    DeviceSession,
    SessionEvent,
    SessionEventKind,
    SessionInfo,
    SessionScope,
    SessionStatus,
)
from envoy.core.protocols import SessionHandle
from envoy.core.task_registry import TaskRegistry
from envoy.transport.remote_connection import RemoteConnection, format_address, parse_address
from envoy.utils import command_retry

logger = logging.getLogger(__name__)

DEVICE_ID_FILENAME = "device_id"


def load_or_create_device_id(state_dir: str | Path) -> str:
    """Read the persisted device id, creating it on first use."""
    directory = Path(state_dir).expanduser()
    path = directory / DEVICE_ID_FILENAME
    try:
        existing = path.read_text(encoding="utf-8").strip()
        if existing:
            return existing
    except FileNotFoundError:
        pass

    device_id = str(uuid.uuid4())
    try:
        directory.mkdir(parents=True, exist_ok=True)
        path.write_text(device_id + "\n", encoding="utf-8")
    except OSError as e:
        logger.warning("Could not persist device id to %s: %s (using ephemeral id)", path, e)
    return device_id


class SessionManager:  # pylint: disable=too-many-instance-attributes,too-many-public-methods  # Registry facade for local + remote sessions
    """Manages CLI sessions across devices with remote viewing and interaction."""

    def __init__(
        self,
        settings: Optional[Config] = None,
        *,
        device_id: Optional[str] = None,
        device_name: Optional[str] = None,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self.config = settings or default_config
        self.device_id = device_id or load_or_create_device_id(self.config.device.state_dir)
        self.device_name = device_name or self.config.device.name or socket.gethostname() or "Unknown device"
        self.task_registry = task_registry or TaskRegistry()

        # Insertion-ordered so equal timestamps list deterministically.
        self._local_sessions: OrderedDict[str, CLISession] = OrderedDict()
        self._connections: dict[str, RemoteConnection] = {}
        self._connection_lock = asyncio.Lock()
        self._observers: set[asyncio.Queue[SessionEvent]] = set()

    # ==================== Local Session Management ====================

    async def create_session(
        self,
        task_id: str,
        cli: CLIType,
        prompt: str,
        working_directory: Optional[str | Path] = None,
        environment: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> CLISession:
        """Create, register and start a new local CLI session.

        The session is registered while still pending, so listings see it before
        the process is up. A spawn failure leaves it registered as failed.

        Raises:
            ProcessSpawnFailed: If the agent process could not be started
        """
        session = CLISession(
            task_id=task_id,
            cli=cli,
            agents=self.config.agents,
            task_registry=self.task_registry,
            terminate_grace_period=self.config.sessions.terminate_grace_period,
            on_status_change=self._on_session_status_change,
        )
        self._local_sessions[session.id] = session
        self._notify(SessionEvent(SessionEventKind.SESSION_CREATED, session=session.snapshot(), session_id=session.id))
        logger.info("Created session %s for task %s (%s)", session.id[:8], task_id[:8], cli.value)

        workdir = working_directory or self.config.sessions.default_working_dir
        try:
            await session.start(prompt, working_directory=workdir, environment=environment, timeout=timeout)
        except ProcessSpawnFailed:
            logger.warning("Session %s registered as failed (spawn failure)", session.id[:8])
            raise
        return session

    def get_session(self, session_id: str) -> Optional[SessionHandle]:
        """Look up a session by id (local first, then attached remote proxies).

        Returns:
            The handle, or None if the id is unknown or was evicted
        """
        local = self._local_sessions.get(session_id)
        if local is not None:
            return local
        for connection in list(self._connections.values()):
            proxy = connection.get_proxy(session_id)
            if proxy is not None:
                return proxy
        return None

    def get_local_session(self, session_id: str) -> Optional[CLISession]:
        return self._local_sessions.get(session_id)

    def require_session(self, session_id: str) -> SessionHandle:
        """Like get_session, but raise SessionNotFound for unknown ids."""
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    async def list_local_sessions(self) -> list[SessionInfo]:
        """List all local sessions, newest first."""
        infos = [session.snapshot() for session in list(self._local_sessions.values())]
        return sorted(infos, key=lambda info: info.created_at, reverse=True)

    async def terminate_session(self, session_id: str) -> bool:
        """Terminate a session by id.

        Returns:
            False when the id is unknown
        """
        session = self.get_session(session_id)
        if session is None:
            logger.debug("terminate_session: %s not found", session_id[:8])
            return False
        await session.terminate()
        return True

    def remove_session(self, session_id: str) -> bool:
        """Evict a local session from the registry (its process is left alone)."""
        session = self._local_sessions.pop(session_id, None)
        if session is None:
            return False
        if not session.status.is_terminal:
            logger.warning("Evicting session %s while still %s", session_id[:8], session.status.value)
        return True

    def cleanup_old_sessions(self, older_than: timedelta | float) -> list[str]:
        """Evict terminal local sessions created before now - older_than.

        Args:
            older_than: Age threshold (timedelta or seconds)

        Returns:
            Ids of the evicted sessions
        """
        age = older_than if isinstance(older_than, timedelta) else timedelta(seconds=older_than)
        cutoff = datetime.now(timezone.utc) - age
        stale = [
            session_id
            for session_id, session in list(self._local_sessions.items())
            if session.created_at < cutoff and session.status.is_terminal
        ]
        for session_id in stale:
            self._local_sessions.pop(session_id, None)
        if stale:
            logger.info("Cleaned up %d old sessions", len(stale))
        return stale

    # ==================== Remote Session Access ====================

    async def connect_to_remote(
        self,
        host: str,
        port: int = DEFAULT_REMOTE_PORT,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> RemoteConnection:
        """Connect to a remote session server.

        Reconnecting to an address that is already connected replaces (and
        closes) the previous connection, so callers may simply retry.

        Raises:
            RemoteConnectionError: timeout, refused, or protocol-mismatch
        """
        remote_cfg = self.config.remote

        @command_retry(max_retries=remote_cfg.connect_retries, max_timeout=remote_cfg.connect_timeout * 2)
        async def _connect() -> RemoteConnection:
            connection = RemoteConnection(
                host,
                port,
                device_id=self.device_id,
                connect_timeout=remote_cfg.connect_timeout,
                request_timeout=remote_cfg.request_timeout,
                transport=transport,
                task_registry=self.task_registry,
            )
            await connection.connect()
            return connection

        connection = await _connect()
        address = format_address(host, port)
        async with self._connection_lock:
            previous = self._connections.get(address)
            self._connections[address] = connection
        if previous is not None:
            logger.info("Replacing existing connection to %s", address)
            await previous.disconnect()

        self._notify(SessionEvent(SessionEventKind.REMOTE_CONNECTED, device=connection.remote_device))
        return connection

    async def disconnect_remote(self, host: str, port: int = DEFAULT_REMOTE_PORT) -> bool:
        address = format_address(host, port)
        async with self._connection_lock:
            connection = self._connections.pop(address, None)
        if connection is None:
            return False
        device = connection.remote_device
        await connection.disconnect()
        self._notify(SessionEvent(SessionEventKind.REMOTE_DISCONNECTED, device=device, session_id=None))
        return True

    def connections(self) -> list[RemoteConnection]:
        return list(self._connections.values())

    async def connect_configured_peers(self) -> list[RemoteConnection]:
        """Connect to every `remote.peers` entry; failures are logged, not raised."""
        connected: list[RemoteConnection] = []
        for peer in self.config.remote.peers:
            host, port = parse_address(peer)
            try:
                connected.append(await self.connect_to_remote(host, port))
            except RemoteConnectionError as e:
                logger.warning("Configured peer %s unavailable: %s", peer, e)
        return connected

    async def list_all_sessions(self) -> list[DeviceSession]:
        """List local and remote sessions, newest first.

        Remote devices that fail or time out are omitted (and logged); the
        listing itself never fails because of them.
        """
        sessions = [
            DeviceSession(info=info, device_id=self.device_id, device_name=self.device_name, is_local=True)
            for info in await self.list_local_sessions()
        ]

        connections = list(self._connections.values())
        if connections:
            results = await asyncio.gather(*(self._list_remote(connection) for connection in connections))
            for remote_sessions in results:
                sessions.extend(remote_sessions)

        return sorted(sessions, key=lambda session: session.info.created_at, reverse=True)

    async def _list_remote(self, connection: RemoteConnection) -> list[DeviceSession]:
        try:
            infos = await asyncio.wait_for(
                connection.list_remote_sessions(), timeout=self.config.remote.list_timeout
            )
        except asyncio.TimeoutError:
            error = RemoteUnreachable(connection.address, f"no answer within {self.config.remote.list_timeout:.1f}s")
            logger.warning("%s", error)
            return []
        except RemoteUnreachable as e:
            logger.warning("%s", e)
            return []
        except Exception as e:  # one misbehaving peer must not fail the aggregate listing
            error = RemoteUnreachable(connection.address, f"{type(e).__name__}: {e}")
            logger.warning("%s", error, exc_info=True)
            return []

        device = connection.remote_device
        device_id = device.id if device else connection.address
        device_name = device.name if device else connection.host
        listed: list[DeviceSession] = []
        for info in infos:
            connection.proxy_for(info)
            listed.append(DeviceSession(info=info, device_id=device_id, device_name=device_name, is_local=False))
        return listed

    # ==================== Session Observation ====================

    async def observe_sessions(self) -> AsyncIterator[SessionEvent]:
        """Yield registry events until the caller stops iterating."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue()
        self._observers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._observers.discard(queue)

    def _notify(self, event: SessionEvent) -> None:
        for queue in list(self._observers):
            queue.put_nowait(event)

    def _on_session_status_change(self, session: CLISession) -> None:
        if session.id not in self._local_sessions:
            return
        info = session.snapshot()
        if info.status == SessionStatus.TERMINATED:
            self._notify(SessionEvent(SessionEventKind.SESSION_TERMINATED, session=info, session_id=session.id))
        else:
            self._notify(SessionEvent(SessionEventKind.SESSION_UPDATED, session=info, session_id=session.id))

    # ==================== Device ====================

    def get_device_info(self) -> DeviceInfo:
        return DeviceInfo(
            id=self.device_id,
            name=self.device_name,
            platform=platform.system() or "unknown",
            version=platform.release() or "unknown",
        )

    # ==================== Shutdown ====================

    async def shutdown(self, timeout: float = 5.0) -> None:
        """Disconnect remotes, terminate running local sessions, cancel background tasks."""
        for address in list(self._connections):
            connection = self._connections.pop(address)
            await connection.disconnect()

        running = [session for session in self._local_sessions.values() if not session.status.is_terminal]
        if running:
            logger.info("Terminating %d running sessions", len(running))
            results = await asyncio.gather(*(session.terminate() for session in running), return_exceptions=True)
            for session, result in zip(running, results):
                if isinstance(result, Exception):
                    logger.error("Failed to terminate session %s: %s", session.id[:8], result)

        pending = await self.task_registry.shutdown(timeout=timeout)
        if pending:
            logger.warning("%d background tasks outlived shutdown", pending)


def filter_sessions(sessions: Iterable[DeviceSession], scope: SessionScope) -> list[DeviceSession]:
    if scope == SessionScope.LOCAL:
        return [session for session in sessions if session.is_local]
    if scope == SessionScope.REMOTE:
        return [session for session in sessions if not session.is_local]
    return list(sessions)


def group_by_device(sessions: Iterable[DeviceSession]) -> list[tuple[str, str, list[DeviceSession]]]:
    """Group sessions by owning device: [(device_id, device_name, sessions)].

    Groups keep first-seen order, so a newest-first listing yields the device
    with the most recent session first.
    """
    groups: OrderedDict[str, tuple[str, list[DeviceSession]]] = OrderedDict()
    for session in sessions:
        if session.device_id not in groups:
            groups[session.device_id] = (session.device_name, [])
        groups[session.device_id][1].append(session)
    return [(device_id, name, members) for device_id, (name, members) in groups.items()]
