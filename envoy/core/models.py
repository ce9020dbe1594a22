"""Data models for Envoy sessions."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from envoy.constants import AGENT_METADATA, CONTROL_BYTES, TASK_ID_DISPLAY_LENGTH


def _parse_datetime(value: object) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CLIType(str, Enum):
    """Type of coding CLI to execute."""

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI_CLI = "gemini-cli"

    @property
    def display_name(self) -> str:
        return str(AGENT_METADATA[self.value]["display_name"])

    @property
    def default_executable(self) -> str:
        return str(AGENT_METADATA[self.value]["executable"])

    @classmethod
    def from_str(cls, value: str) -> "CLIType":
        """Parse a CLI type, accepting the bare executable name as an alias."""
        normalized = value.strip().lower()
        for member in cls:
            if normalized in (member.value, member.default_executable):
                return member
        raise ValueError(f"Unknown CLI type: {value!r}")


class SessionStatus(str, Enum):
    """Lifecycle state: pending -> running -> completed | failed | terminated."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TERMINATED = "terminated"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.TERMINATED})
EXIT_CODE_STATUSES = frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED})


class ControlCharacter(str, Enum):
    """Control keys that can be sent to an interactive session."""

    C = "c"  # Interrupt
    D = "d"  # EOF
    Z = "z"  # Suspend
    L = "l"  # Clear

    def to_bytes(self) -> bytes:
        return CONTROL_BYTES[self.value]


class OutputType(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    EXIT = "exit"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class SessionOutput:
    """One chunk of process I/O, or the terminal event that ends a stream."""

    type: OutputType
    data: Optional[bytes] = None
    exit_code: Optional[int] = None

    @classmethod
    def stdout(cls, data: bytes) -> "SessionOutput":
        return cls(type=OutputType.STDOUT, data=data)

    @classmethod
    def stderr(cls, data: bytes) -> "SessionOutput":
        return cls(type=OutputType.STDERR, data=data)

    @classmethod
    def exit(cls, code: int) -> "SessionOutput":
        return cls(type=OutputType.EXIT, exit_code=code)

    @classmethod
    def terminated(cls) -> "SessionOutput":
        return cls(type=OutputType.TERMINATED)

    @property
    def is_terminal(self) -> bool:
        return self.type in (OutputType.EXIT, OutputType.TERMINATED)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"type": self.type.value}
        if self.data is not None:
            payload["data"] = base64.b64encode(self.data).decode("ascii")
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SessionOutput":
        raw = data.get("data")
        exit_code = data.get("exit_code")
        return cls(
            type=OutputType(str(data["type"])),
            data=base64.b64decode(str(raw)) if raw is not None else None,
            exit_code=int(exit_code) if exit_code is not None else None,  # type: ignore[call-overload]
        )


@dataclass(frozen=True)
class SessionInfo:  # pylint: disable=too-many-instance-attributes  # Snapshot mirrors the full session identity
    """Snapshot of one agent run.

    Snapshots go stale as soon as they are taken; re-fetch through the
    SessionManager for live data.
    """

    id: str
    task_id: str
    cli: CLIType
    status: SessionStatus
    created_at: datetime
    output_size: int
    exit_code: Optional[int] = None

    def __post_init__(self) -> None:
        has_exit_code = self.exit_code is not None
        if has_exit_code != (self.status in EXIT_CODE_STATUSES):
            raise ValueError(f"exit_code must be set iff status is completed/failed (status={self.status.value})")

    @property
    def short_task_id(self) -> str:
        return self.task_id[:TASK_ID_DISPLAY_LENGTH]

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "task_id": self.task_id,
            "cli": self.cli.value,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "output_size": self.output_size,
            "exit_code": self.exit_code,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "SessionInfo":
        exit_code = data.get("exit_code")
        return cls(
            id=str(data["id"]),
            task_id=str(data["task_id"]),
            cli=CLIType(str(data["cli"])),
            status=SessionStatus(str(data["status"])),
            created_at=_parse_datetime(data["created_at"]),
            output_size=int(data.get("output_size") or 0),  # type: ignore[call-overload]
            exit_code=int(exit_code) if exit_code is not None else None,  # type: ignore[call-overload]
        )


@dataclass(frozen=True)
class DeviceInfo:
    id: str
    name: str
    platform: str
    version: str

    def to_dict(self) -> dict[str, object]:
        return {"id": self.id, "name": self.name, "platform": self.platform, "version": self.version}

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "DeviceInfo":
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            platform=str(data.get("platform", "unknown")),
            version=str(data.get("version", "unknown")),
        )


@dataclass(frozen=True)
class DeviceSession:
    """A session bound to the device that hosts it."""

    info: SessionInfo
    device_id: str
    device_name: str
    is_local: bool

    @property
    def id(self) -> str:
        return self.info.id

    def to_dict(self) -> dict[str, object]:
        return {
            "info": self.info.to_dict(),
            "device_id": self.device_id,
            "device_name": self.device_name,
            "is_local": self.is_local,
        }


class SessionEventKind(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    SESSION_TERMINATED = "session_terminated"
    REMOTE_CONNECTED = "remote_connected"
    REMOTE_DISCONNECTED = "remote_disconnected"


@dataclass(frozen=True)
class SessionEvent:
    """Registry change notification delivered to session observers."""

    kind: SessionEventKind
    session: Optional[SessionInfo] = None
    session_id: Optional[str] = None
    device: Optional[DeviceInfo] = None


class SessionScope(str, Enum):
    """Listing filter used by session browsers."""

    ALL = "all"
    LOCAL = "local"
    REMOTE = "remote"
