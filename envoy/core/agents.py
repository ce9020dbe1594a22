"""CLI agent resolution: which executable to run and with which arguments."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import Mapping, Optional

from envoy.config import AgentConfig, config
from envoy.constants import CLI_SEARCH_DIRS
from envoy.core.models import CLIType

logger = logging.getLogger(__name__)


def get_agent_config(cli: CLIType, agents: Optional[Mapping[str, AgentConfig]] = None) -> AgentConfig:
    """Fetch AgentConfig or raise clear error for unknown agent."""
    registry = config.agents if agents is None else agents
    cfg = registry.get(cli.value)
    if not cfg:
        raise ValueError(f"No agent configuration for '{cli.value}'")
    return cfg


def find_executable(executable: str) -> Optional[str]:
    """Locate an executable: explicit path, common install dirs, then PATH.

    Returns:
        Absolute path, or None when nothing executable was found.
    """
    candidate = Path(executable).expanduser()
    if candidate.is_absolute() or os.sep in executable:
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None

    for directory in CLI_SEARCH_DIRS:
        path = Path(directory).expanduser() / executable
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)

    return shutil.which(executable)


def resolve_cli_executable(cli: CLIType, agents: Optional[Mapping[str, AgentConfig]] = None) -> Optional[str]:
    return find_executable(get_agent_config(cli, agents).executable)


def build_interactive_args(
    cli: CLIType, prompt: str, agents: Optional[Mapping[str, AgentConfig]] = None
) -> list[str]:
    """
    Build the argument list (without executable) for an interactive run.

    Examples:
        >>> build_interactive_args(CLIType.CODEX, "fix the tests")
        ['--task', 'fix the tests', '--interactive']
    """
    agent_cfg = get_agent_config(cli, agents)
    args = [arg.replace("{prompt}", prompt) for arg in agent_cfg.interactive_args]
    return args + list(agent_cfg.extra_args)


def detect_installed_clis(agents: Optional[Mapping[str, AgentConfig]] = None) -> dict[CLIType, str]:
    """Map every CLI type that can be found on this machine to its executable path."""
    found: dict[CLIType, str] = {}
    for cli in CLIType:
        try:
            path = resolve_cli_executable(cli, agents)
        except ValueError:
            continue
        if path:
            found[cli] = path
    logger.debug("Detected CLIs: %s", {cli.value: path for cli, path in found.items()})
    return found
