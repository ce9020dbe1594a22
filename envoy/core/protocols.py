"""Protocol definitions for session handles."""

from datetime import datetime
from typing import AsyncIterator, Protocol, runtime_checkable

from envoy.core.models import CLIType, ControlCharacter, SessionInfo, SessionOutput, SessionStatus


@runtime_checkable
class SessionHandle(Protocol):
    """Capability interface shared by local process handles and remote proxies.

    The SessionManager and API server only talk to sessions through this
    protocol; locality is display metadata, never a code path.
    """

    @property
    def id(self) -> str: ...

    @property
    def task_id(self) -> str: ...

    @property
    def cli(self) -> CLIType: ...

    @property
    def created_at(self) -> datetime: ...

    @property
    def status(self) -> SessionStatus: ...

    async def get_info(self) -> SessionInfo:
        """Return a fresh snapshot of the session."""
        ...

    async def get_output_buffer(self) -> bytes:
        """Return all output captured so far (empty when nothing arrived yet)."""
        ...

    def output_stream(self) -> AsyncIterator[SessionOutput]:
        """Replay buffered history, then follow live output until the terminal event."""
        ...

    async def send_input(self, data: str | bytes) -> None:
        """Forward raw input to the process.

        Raises:
            SessionNotInteractive: If the session is not running
        """
        ...

    async def send_control(self, character: ControlCharacter) -> None:
        """Send a control key (Ctrl+C, Ctrl+D, ...) to the process."""
        ...

    async def terminate(self) -> None:
        """Stop the session; a no-op when it already reached a terminal state."""
        ...
