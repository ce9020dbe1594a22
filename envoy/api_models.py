"""API request/response models for the session API server."""

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from envoy.core.models import DeviceInfo, SessionInfo

CLIName = Literal["claude-code", "codex", "gemini-cli"]


class CreateSessionRequest(BaseModel):  # type: ignore[explicit-any]
    """Request to create a new session."""

    model_config = ConfigDict(frozen=True)

    cli: CLIName
    prompt: str = Field(..., min_length=1)
    task_id: str | None = None
    working_directory: str | None = None


class InputRequest(BaseModel):  # type: ignore[explicit-any]
    """Input for a session's stdin: UTF-8 `text` or base64 `data`, exactly one."""

    model_config = ConfigDict(frozen=True)

    text: str | None = None
    data: str | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "InputRequest":
        if (self.text is None) == (self.data is None):
            raise ValueError("exactly one of 'text' or 'data' is required")
        return self


class ControlRequest(BaseModel):  # type: ignore[explicit-any]
    """Request to send a control key (c, d, z, l) to a session."""

    model_config = ConfigDict(frozen=True)

    key: Literal["c", "d", "z", "l"]


class SessionInfoDTO(BaseModel):  # type: ignore[explicit-any]
    """DTO for session data in API responses."""

    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    cli: CLIName
    status: Literal["pending", "running", "completed", "failed", "terminated"]
    created_at: str
    output_size: int
    exit_code: int | None = None

    @classmethod
    def from_core(cls, info: "SessionInfo") -> "SessionInfoDTO":
        """Map from core SessionInfo dataclass."""
        return cls(
            id=info.id,
            task_id=info.task_id,
            cli=info.cli.value,  # type: ignore[arg-type]
            status=info.status.value,  # type: ignore[arg-type]
            created_at=info.created_at.isoformat(),
            output_size=info.output_size,
            exit_code=info.exit_code,
        )


class DeviceDTO(BaseModel):  # type: ignore[explicit-any]
    """DTO for device info."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    platform: str
    version: str

    @classmethod
    def from_core(cls, device: "DeviceInfo") -> "DeviceDTO":
        return cls(id=device.id, name=device.name, platform=device.platform, version=device.version)


class HandshakeDTO(BaseModel):  # type: ignore[explicit-any]
    """Response of GET /api/device."""

    model_config = ConfigDict(frozen=True)

    protocol: str
    device: DeviceDTO


class BufferDTO(BaseModel):  # type: ignore[explicit-any]
    """Full output buffer, base64 encoded."""

    model_config = ConfigDict(frozen=True)

    data: str
    size: int
