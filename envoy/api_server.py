"""API server exposing this device's sessions to peers.

Peers connect with envoy.transport.remote_connection.RemoteConnection. Only
local sessions are served: a peer never relays sessions it proxies itself.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import uuid
from contextlib import aclosing
from typing import AsyncIterator

import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse

from envoy import __version__
from envoy.api_models import (
    BufferDTO,
    ControlRequest,
    CreateSessionRequest,
    DeviceDTO,
    HandshakeDTO,
    InputRequest,
    SessionInfoDTO,
)
from envoy.constants import API_STOP_TIMEOUT_S, PROTOCOL_VERSION, SSE_MEDIA_TYPE
from envoy.core.cli_session import CLISession
from envoy.core.errors import ProcessSpawnFailed, SessionNotInteractive
from envoy.core.models import CLIType, ControlCharacter
from envoy.core.session_manager import SessionManager
from envoy.transport.sse import encode_event

logger = logging.getLogger(__name__)

API_TIMEOUT_KEEP_ALIVE_S = 5


class APIServer:
    """HTTP API server for remote session access."""

    def __init__(
        self,
        session_manager: SessionManager,
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self.session_manager = session_manager
        self.host = host or session_manager.config.server.host
        self.port = session_manager.config.server.port if port is None else port
        self.app = FastAPI(title="Envoy Sessions API", version=__version__)
        self._setup_routes()
        self.server: uvicorn.Server | None = None
        self.server_task: asyncio.Task[object] | None = None
        self._running = False

    def _require_local(self, session_id: str) -> CLISession:
        session = self.session_manager.get_local_session(session_id)
        if session is None:
            raise HTTPException(status_code=404, detail=f"Session not found: {session_id}")
        return session

    def _setup_routes(self) -> None:  # pylint: disable=too-many-locals  # Route closures share server state
        """Set up all API routes."""

        @self.app.get("/health")
        async def health() -> dict[str, str]:  # pyright: ignore
            return {"status": "ok"}

        @self.app.get("/api/device")
        async def handshake() -> HandshakeDTO:  # pyright: ignore
            """Protocol handshake: peers check `protocol` before anything else."""
            device = self.session_manager.get_device_info()
            return HandshakeDTO(protocol=PROTOCOL_VERSION, device=DeviceDTO.from_core(device))

        @self.app.get("/api/sessions")
        async def list_sessions() -> list[SessionInfoDTO]:  # pyright: ignore
            infos = await self.session_manager.list_local_sessions()
            return [SessionInfoDTO.from_core(info) for info in infos]

        @self.app.post("/api/sessions", status_code=201)
        async def create_session(request: CreateSessionRequest) -> SessionInfoDTO:  # pyright: ignore
            task_id = request.task_id or str(uuid.uuid4())
            try:
                session = await self.session_manager.create_session(
                    task_id,
                    CLIType(request.cli),
                    request.prompt,
                    working_directory=request.working_directory,
                )
            except ProcessSpawnFailed as e:
                raise HTTPException(
                    status_code=422, detail={"message": str(e), "session_id": e.session_id}
                ) from e
            return SessionInfoDTO.from_core(session.snapshot())

        @self.app.get("/api/sessions/{session_id}")
        async def get_session(session_id: str) -> SessionInfoDTO:  # pyright: ignore
            session = self._require_local(session_id)
            return SessionInfoDTO.from_core(await session.get_info())

        @self.app.get("/api/sessions/{session_id}/buffer")
        async def get_buffer(session_id: str) -> BufferDTO:  # pyright: ignore
            session = self._require_local(session_id)
            buffer = await session.get_output_buffer()
            return BufferDTO(data=base64.b64encode(buffer).decode("ascii"), size=len(buffer))

        @self.app.get("/api/sessions/{session_id}/stream")
        async def stream_session(session_id: str) -> StreamingResponse:  # pyright: ignore
            """Full replay then live tail, one SSE event per SessionOutput."""
            session = self._require_local(session_id)

            async def _events() -> AsyncIterator[str]:
                async with aclosing(session.output_stream()) as events:
                    async for event in events:
                        yield encode_event(event.to_dict())

            return StreamingResponse(
                _events(),
                media_type=SSE_MEDIA_TYPE,
                headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
            )

        @self.app.post("/api/sessions/{session_id}/input")
        async def send_input(session_id: str, request: InputRequest) -> dict[str, str]:  # pyright: ignore
            session = self._require_local(session_id)
            if request.text is not None:
                payload: str | bytes = request.text
            else:
                try:
                    payload = base64.b64decode(request.data or "", validate=True)
                except (binascii.Error, ValueError) as e:
                    raise HTTPException(status_code=400, detail="data is not valid base64") from e
            try:
                await session.send_input(payload)
            except SessionNotInteractive as e:
                raise HTTPException(status_code=409, detail={"message": str(e), "status": e.status}) from e
            return {"status": "success"}

        @self.app.post("/api/sessions/{session_id}/control")
        async def send_control(session_id: str, request: ControlRequest) -> dict[str, str]:  # pyright: ignore
            session = self._require_local(session_id)
            try:
                await session.send_control(ControlCharacter(request.key))
            except SessionNotInteractive as e:
                raise HTTPException(status_code=409, detail={"message": str(e), "status": e.status}) from e
            return {"status": "success"}

        @self.app.post("/api/sessions/{session_id}/terminate")
        async def terminate_session(session_id: str) -> SessionInfoDTO:  # pyright: ignore
            session = self._require_local(session_id)
            await session.terminate()
            return SessionInfoDTO.from_core(await session.get_info())

    @property
    def bound_port(self) -> int | None:
        """Actual listening port (useful when started with port 0)."""
        server = self.server
        if not server or not server.started:
            return None
        for listener in getattr(server, "servers", []):
            for sock in listener.sockets:
                return int(sock.getsockname()[1])
        return None

    async def start(self) -> None:
        """Start the API server."""
        if self.server_task and not self.server_task.done():
            logger.warning("API server already running; skipping start")
            return
        self._running = True
        logger.info("API server starting")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            timeout_keep_alive=API_TIMEOUT_KEEP_ALIVE_S,
        )
        self.server = uvicorn.Server(config)
        server = self.server

        # Run server in background task. Avoid uvicorn's signal handling so the caller stays in control.
        serve_coro = server._serve() if hasattr(server, "_serve") else server.serve()
        self.server_task = asyncio.create_task(serve_coro)
        self.server_task.add_done_callback(self._on_server_task_done)

        max_retries = 50  # 5 seconds total
        for _ in range(max_retries):
            if server.started:
                break
            if self.server_task.done():
                exc = self.server_task.exception()
                raise RuntimeError("API server exited during startup") from exc
            await asyncio.sleep(0.1)
        if not server.started:
            raise TimeoutError("API server failed to start within timeout")

        logger.info("API server listening on %s:%s", self.host, self.bound_port)

    async def stop(self) -> None:
        """Stop the API server."""
        self._running = False
        logger.info("API server stopping")
        server = self.server
        if server:
            if server.started:
                server.should_exit = True
            elif self.server_task:
                self.server_task.cancel()

        if self.server_task:
            try:
                await asyncio.wait_for(self.server_task, timeout=API_STOP_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Timed out stopping API server; cancelling task")
                self.server_task.cancel()
                try:
                    await self.server_task
                except asyncio.CancelledError:
                    pass
            except asyncio.CancelledError:
                pass
        logger.info("API server stopped")

    def _on_server_task_done(self, task: asyncio.Task[object]) -> None:
        if not self._running:
            return
        try:
            exc = task.exception()
        except asyncio.CancelledError:
            return
        should_exit = getattr(self.server, "should_exit", None)
        if exc:
            logger.error("API server task crashed: %s (should_exit=%s)", exc, should_exit, exc_info=True)
        elif not should_exit:
            logger.error("API server task exited unexpectedly (should_exit=%s)", should_exit)
