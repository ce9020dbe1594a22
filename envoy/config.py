"""Global configuration management.

Config is loaded at module import time and available globally via:
    from envoy.config import config

Components that accept a config argument (SessionManager, APIServer) default to
this instance, so tests can construct their own with `load_config(path)`.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

import yaml
from dotenv import load_dotenv

from envoy.constants import (
    AGENT_METADATA,
    DEFAULT_REMOTE_PORT,
    REMOTE_CONNECT_TIMEOUT,
    REMOTE_LIST_TIMEOUT,
    REMOTE_REQUEST_TIMEOUT,
    TERMINATE_GRACE_PERIOD,
)
from envoy.utils import expand_env_vars

# Project root (relative to this file)
_project_root = Path(__file__).parent.parent

# Load .env (allow override for tests)
_env_path = os.getenv("ENVOY_ENV_PATH")
_dotenv_path = Path(_env_path).expanduser() if _env_path else _project_root / ".env"
if not _dotenv_path.is_absolute():
    _dotenv_path = (_project_root / _dotenv_path).resolve()

load_dotenv(_dotenv_path)


@dataclass
class DeviceConfig:
    """Identity of this installation.

    Attributes:
        name: Display name shown to peers; falls back to the host name when empty
        _configured_state_dir: Directory holding the persisted device id
    """

    name: str | None
    _configured_state_dir: str

    @property
    def state_dir(self) -> str:
        """Get state directory (lazy-loaded from env var for test compatibility)."""
        env_dir = os.getenv("ENVOY_STATE_DIR")
        if env_dir:
            return env_dir
        return self._configured_state_dir


@dataclass
class ServerConfig:
    host: str
    port: int


@dataclass
class RemoteConfig:
    """Settings for connections to peer devices."""

    connect_timeout: float
    list_timeout: float
    request_timeout: float
    connect_retries: int
    peers: list[str] = field(default_factory=list)  # "host:port" entries connected at startup


@dataclass
class SessionsConfig:
    default_cli: str
    default_working_dir: str
    terminate_grace_period: float
    cleanup_after_hours: float


@dataclass
class AgentConfig:
    """Configuration for a specific CLI agent."""

    display_name: str
    executable: str  # Bare name searched on disk, or an absolute path override
    interactive_args: list[str]  # "{prompt}" is substituted
    extra_args: list[str] = field(default_factory=list)


@dataclass
class Config:
    device: DeviceConfig
    server: ServerConfig
    remote: RemoteConfig
    sessions: SessionsConfig
    agents: Dict[str, AgentConfig]


# Default configuration values (single source of truth)
DEFAULT_CONFIG: dict[str, object] = {
    "device": {
        "name": None,
        "state_dir": "~/.envoy",
    },
    "server": {
        "host": "0.0.0.0",
        "port": DEFAULT_REMOTE_PORT,
    },
    "remote": {
        "connect_timeout": REMOTE_CONNECT_TIMEOUT,
        "list_timeout": REMOTE_LIST_TIMEOUT,
        "request_timeout": REMOTE_REQUEST_TIMEOUT,
        "connect_retries": 3,
        "peers": [],
    },
    "sessions": {
        "default_cli": "claude-code",
        "default_working_dir": "~",
        "terminate_grace_period": TERMINATE_GRACE_PERIOD,
        "cleanup_after_hours": 24,
    },
    "agents": {
        "claude-code": {},
        "codex": {},
        "gemini-cli": {},
    },
}


def _deep_merge(base: dict[str, object], override: dict[str, object]) -> dict[str, object]:
    """Deep merge override dict into base dict.

    Args:
        base: Base dictionary with defaults
        override: Dictionary with overrides from user config

    Returns:
        Merged dictionary
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)  # type: ignore[arg-type]
        else:
            result[key] = value
    return result


def _build_agents(agents_raw: object) -> Dict[str, AgentConfig]:
    agents_registry: Dict[str, AgentConfig] = {}
    if not isinstance(agents_raw, dict):
        return agents_registry

    for name, agent_data in agents_raw.items():
        metadata = AGENT_METADATA.get(name)
        if not metadata:
            raise ValueError(f"Unknown agent '{name}' - no metadata in constants.AGENT_METADATA")
        overrides = agent_data if isinstance(agent_data, dict) else {}

        agents_registry[name] = AgentConfig(
            display_name=str(metadata["display_name"]),
            executable=str(overrides.get("executable") or metadata["executable"]),
            interactive_args=[str(arg) for arg in overrides.get("interactive_args", metadata["interactive_args"])],
            extra_args=[str(arg) for arg in overrides.get("extra_args", [])],
        )
    return agents_registry


def _build_config(raw: dict[str, object]) -> Config:
    """Build typed Config from raw dict with proper type conversion."""
    dev_raw = raw["device"]
    srv_raw = raw["server"]
    rem_raw = raw["remote"]
    ses_raw = raw["sessions"]

    return Config(
        device=DeviceConfig(
            name=str(dev_raw["name"]) if dev_raw["name"] else None,  # type: ignore[index]
            _configured_state_dir=str(dev_raw["state_dir"]),  # type: ignore[index]
        ),
        server=ServerConfig(
            host=str(srv_raw["host"]),  # type: ignore[index]
            port=int(srv_raw["port"]),  # type: ignore[index]
        ),
        remote=RemoteConfig(
            connect_timeout=float(rem_raw["connect_timeout"]),  # type: ignore[index]
            list_timeout=float(rem_raw["list_timeout"]),  # type: ignore[index]
            request_timeout=float(rem_raw["request_timeout"]),  # type: ignore[index]
            connect_retries=max(1, int(rem_raw["connect_retries"])),  # type: ignore[index]
            peers=[str(peer) for peer in rem_raw["peers"] or []],  # type: ignore[index]
        ),
        sessions=SessionsConfig(
            default_cli=str(ses_raw["default_cli"]),  # type: ignore[index]
            default_working_dir=str(ses_raw["default_working_dir"]),  # type: ignore[index]
            terminate_grace_period=float(ses_raw["terminate_grace_period"]),  # type: ignore[index]
            cleanup_after_hours=float(ses_raw["cleanup_after_hours"]),  # type: ignore[index]
        ),
        agents=_build_agents(raw.get("agents", {})),
    )


def resolve_config_path() -> Path:
    """Return the config file path from ENVOY_CONFIG_PATH or the project root."""
    config_env_path = os.getenv("ENVOY_CONFIG_PATH")
    config_path = Path(config_env_path).expanduser() if config_env_path else _project_root / "config.yml"
    if not config_path.is_absolute():
        config_path = (_project_root / config_path).resolve()
    return config_path


def load_config(path: Path | None = None) -> Config:
    """Load, expand and merge a YAML config file over the defaults.

    A missing file is not an error: the defaults describe a working local setup.
    """
    config_path = path or resolve_config_path()
    user_config: object = {}
    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    if not isinstance(user_config, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping, got {type(user_config).__name__}")

    # Expand environment variables
    user_config = expand_env_vars(user_config)

    # Merge with defaults and build typed config
    merged = _deep_merge(DEFAULT_CONFIG, user_config)  # type: ignore[arg-type]
    return _build_config(merged)


config = load_config()
