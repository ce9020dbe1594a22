"""Pytest configuration for Envoy tests."""

import logging
from pathlib import Path

import pytest
import yaml

from envoy.config import Config, load_config

logging.getLogger("envoy").handlers.clear()


def pytest_collection_modifyitems(config, items):
    """Set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


@pytest.fixture(autouse=True)
def isolated_state_dir(monkeypatch, tmp_path):
    """Keep the persisted device id out of the real home directory."""
    state_dir = tmp_path / "state"
    monkeypatch.setenv("ENVOY_STATE_DIR", str(state_dir))
    return state_dir


def write_config(path: Path, overrides: dict[str, object]) -> Path:
    path.write_text(yaml.safe_dump(overrides), encoding="utf-8")
    return path


# Every agent runs through /bin/sh so the prompt is a shell script
SHELL_AGENT = {"executable": "/bin/sh", "interactive_args": ["-c", "{prompt}"]}


@pytest.fixture
def shell_config_file(tmp_path) -> Path:
    """config.yml whose agents are plain shells, with short timeouts."""
    overrides = {
        "device": {"name": "test-device"},
        "remote": {"connect_timeout": 1.0, "list_timeout": 0.5, "request_timeout": 2.0, "connect_retries": 1},
        "sessions": {"default_working_dir": str(tmp_path), "terminate_grace_period": 0.5},
        "agents": {
            "claude-code": SHELL_AGENT,
            "codex": SHELL_AGENT,
            "gemini-cli": SHELL_AGENT,
        },
    }
    return write_config(tmp_path / "config.yml", overrides)


@pytest.fixture
def shell_config(shell_config_file) -> Config:
    return load_config(shell_config_file)
