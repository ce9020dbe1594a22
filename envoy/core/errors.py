"""Exception taxonomy for the session subsystem.

Every error is scoped to the session or connection it names. `str(error)` is a
readable message that can be shown to the user as-is.
"""

from __future__ import annotations

from typing import Literal

ConnectionFailureReason = Literal["timeout", "refused", "protocol-mismatch"]


class EnvoyError(Exception):
    """Base class for all session subsystem errors."""


class SessionNotFound(EnvoyError):
    """Lookup by id found nothing."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotInteractive(EnvoyError):
    """Input was sent to a session that is not running."""

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id[:8]} is not accepting input (status: {status})")
        self.session_id = session_id
        self.status = status


class SessionAlreadyStarted(EnvoyError):
    """start() was called on a session that already left the pending state."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id[:8]} was already started")
        self.session_id = session_id


class ProcessSpawnFailed(EnvoyError):
    """The agent process could not be started."""

    def __init__(self, session_id: str, reason: str):
        super().__init__(f"Failed to start session {session_id[:8]}: {reason}")
        self.session_id = session_id
        self.reason = reason


class RemoteConnectionError(EnvoyError, ConnectionError):
    """Connecting to a remote device failed."""

    def __init__(self, host: str, port: int, reason: ConnectionFailureReason, detail: str = ""):
        message = f"Cannot connect to {host}:{port} ({reason})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.host = host
        self.port = port
        self.reason = reason
        self.detail = detail

    @property
    def retryable(self) -> bool:
        # A peer speaking another protocol will not change its mind on retry.
        return self.reason != "protocol-mismatch"


class RemoteUnreachable(EnvoyError):
    """A remote device failed while its sessions were being enumerated."""

    def __init__(self, address: str, detail: str = ""):
        message = f"Remote device {address} unreachable"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.address = address
        self.detail = detail
