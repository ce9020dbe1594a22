"""Proxy that makes a session on another device look like a local one.

One upstream SSE pump per proxy feeds a local OutputLog mirror, and local
subscribers subscribe to that mirror, so fan-out, replay and terminal-event
semantics are the same as for a local CLISession. When the connection drops
mid-stream the mirror is closed with a `terminated` event; the proxy's view of
the session ends there (a fresh connect enumerates the peer again).
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from contextlib import aclosing
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator, Optional

import httpx

from envoy.core.errors import EnvoyError, SessionNotInteractive
from envoy.core.models import (
    CLIType,
    ControlCharacter,
    OutputType,
    SessionInfo,
    SessionOutput,
    SessionStatus,
)
from envoy.core.output_log import OutputLog
from envoy.core.task_registry import TaskRegistry

if TYPE_CHECKING:
    from envoy.transport.remote_connection import RemoteConnection

logger = logging.getLogger(__name__)


class RemoteSessionProxy:
    """Proxy for viewing and interacting with a remote session."""

    def __init__(
        self,
        connection: "RemoteConnection",
        info: SessionInfo,
        task_registry: Optional[TaskRegistry] = None,
    ) -> None:
        self._connection = connection
        self._info = info
        self._tasks = task_registry or TaskRegistry()
        self._mirror = OutputLog(info.id)
        self._pump_task: Optional[asyncio.Task[None]] = None
        self._disconnected = False

    @property
    def id(self) -> str:
        return self._info.id

    @property
    def task_id(self) -> str:
        return self._info.task_id

    @property
    def cli(self) -> CLIType:
        return self._info.cli

    @property
    def created_at(self) -> datetime:
        return self._info.created_at

    @property
    def status(self) -> SessionStatus:
        return self._info.status

    @property
    def remote_device_id(self) -> str:
        device = self._connection.remote_device
        return device.id if device else ""

    @property
    def remote_device_name(self) -> str:
        device = self._connection.remote_device
        return device.name if device else self._connection.host

    @property
    def is_connected(self) -> bool:
        return not self._disconnected and self._connection.is_connected

    @property
    def subscriber_count(self) -> int:
        return self._mirror.subscriber_count

    def snapshot(self) -> SessionInfo:
        """Last known state, without touching the network."""
        if self._mirror.size > self._info.output_size:
            return dataclasses.replace(self._info, output_size=self._mirror.size)
        return self._info

    def update_info(self, info: SessionInfo) -> None:
        """Adopt a fresher snapshot from the peer (terminal views never regress)."""
        if self._info.status.is_terminal:
            return
        self._info = info

    # ==================== SessionHandle ====================

    async def get_info(self) -> SessionInfo:
        if self.is_connected and not self._info.status.is_terminal:
            try:
                self.update_info(await self._connection.get_session_info(self.id))
            except EnvoyError as e:
                logger.debug("Could not refresh remote session %s: %s", self.id[:8], e)
        return self.snapshot()

    async def get_output_buffer(self) -> bytes:
        if self.is_connected:
            try:
                return await self._connection.get_buffer(self.id)
            except EnvoyError as e:
                logger.debug("Falling back to mirrored buffer for %s: %s", self.id[:8], e)
        return self._mirror.get_buffer()

    def output_stream(self) -> AsyncIterator[SessionOutput]:
        self._ensure_pump()
        return self._mirror.subscribe()

    async def send_input(self, data: str | bytes) -> None:
        if self._info.status != SessionStatus.RUNNING or not self.is_connected:
            raise SessionNotInteractive(self.id, self._info.status.value)
        await self._connection.send_input(self.id, data)

    async def send_control(self, character: ControlCharacter) -> None:
        if self._info.status != SessionStatus.RUNNING or not self.is_connected:
            raise SessionNotInteractive(self.id, self._info.status.value)
        await self._connection.send_control(self.id, character)

    async def terminate(self) -> None:
        """Terminate on the peer; the mirror closes when the peer's stream reports it."""
        if self._info.status.is_terminal:
            return
        if self.is_connected:
            try:
                info = await self._connection.terminate_session(self.id)
            except EnvoyError as e:
                logger.warning("Remote terminate of %s failed: %s", self.id[:8], e)
            else:
                self._info = info
                # The peer's replay carries the history and its own terminal event.
                self._ensure_pump()
                return
        self._end_view()

    async def disconnect(self) -> None:
        """Stop following the remote session; local subscribers see `terminated`."""
        self._disconnected = True
        pump = self._pump_task
        if pump and not pump.done():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        self._end_view()

    # ==================== Private ====================

    def _ensure_pump(self) -> None:
        if self._pump_task is not None or self._mirror.closed:
            return
        if not self.is_connected:
            self._end_view()
            return
        self._pump_task = self._tasks.spawn(self._pump(), name=f"remote-stream-{self.id[:8]}")

    async def _pump(self) -> None:
        try:
            async with aclosing(self._connection.stream_events(self.id)) as events:
                async for event in events:
                    self._apply(event)
                    if event.is_terminal:
                        return
            logger.warning("Remote stream for %s ended without a terminal event", self.id[:8])
        except (httpx.HTTPError, EnvoyError) as e:
            logger.warning("Remote stream for %s dropped: %s", self.id[:8], e)
        finally:
            self._end_view()

    def _apply(self, event: SessionOutput) -> None:
        if not self._mirror.append(event):
            return
        if event.type == OutputType.EXIT and event.exit_code is not None:
            status = SessionStatus.COMPLETED if event.exit_code == 0 else SessionStatus.FAILED
            self._info = dataclasses.replace(
                self._info, status=status, exit_code=event.exit_code, output_size=self._mirror.size
            )
        elif event.type == OutputType.TERMINATED:
            self._info = dataclasses.replace(
                self._info, status=SessionStatus.TERMINATED, exit_code=None, output_size=self._mirror.size
            )
        elif self._info.status == SessionStatus.PENDING:
            self._info = dataclasses.replace(self._info, status=SessionStatus.RUNNING)

    def _end_view(self) -> None:
        """Close the mirror with `terminated` unless a terminal event already arrived."""
        if self._mirror.closed:
            return
        self._mirror.append(SessionOutput.terminated())
        if not self._info.status.is_terminal:
            self._info = dataclasses.replace(
                self._info, status=SessionStatus.TERMINATED, exit_code=None, output_size=self._mirror.size
            )
