"""Unit tests for CLI agent resolution."""

from envoy.config import AgentConfig
from envoy.core import agents as agents_module
from envoy.core.agents import build_interactive_args, detect_installed_clis, find_executable, resolve_cli_executable
from envoy.core.models import CLIType


def _agents(**overrides):
    registry = {
        "claude-code": AgentConfig("Claude Code", "claude", ["{prompt}"]),
        "codex": AgentConfig("Codex", "codex", ["--task", "{prompt}", "--interactive"]),
        "gemini-cli": AgentConfig("Gemini CLI", "gemini", ["chat", "--prompt", "{prompt}"]),
    }
    registry.update(overrides)
    return registry


def test_interactive_args_per_cli_type():
    agents = _agents()

    assert build_interactive_args(CLIType.CLAUDE_CODE, "hi", agents) == ["hi"]
    assert build_interactive_args(CLIType.CODEX, "hi", agents) == ["--task", "hi", "--interactive"]
    assert build_interactive_args(CLIType.GEMINI_CLI, "hi", agents) == ["chat", "--prompt", "hi"]


def test_extra_args_follow_interactive_args():
    agents = _agents(codex=AgentConfig("Codex", "codex", ["--task", "{prompt}"], extra_args=["--model", "o3"]))

    assert build_interactive_args(CLIType.CODEX, "go", agents) == ["--task", "go", "--model", "o3"]


def test_find_executable_accepts_explicit_path(tmp_path):
    tool = tmp_path / "agent"
    tool.write_text("#!/bin/sh\n", encoding="utf-8")
    tool.chmod(0o755)

    assert find_executable(str(tool)) == str(tool)
    assert find_executable(str(tmp_path / "missing")) is None


def test_find_executable_rejects_non_executable_file(tmp_path):
    tool = tmp_path / "agent"
    tool.write_text("not executable", encoding="utf-8")
    tool.chmod(0o644)

    assert find_executable(str(tool)) is None


def test_find_executable_searches_install_dirs_before_path(tmp_path, monkeypatch):
    install_dir = tmp_path / "bin"
    install_dir.mkdir()
    tool = install_dir / "claude"
    tool.write_text("#!/bin/sh\n", encoding="utf-8")
    tool.chmod(0o755)
    monkeypatch.setattr(agents_module, "CLI_SEARCH_DIRS", (str(install_dir),))
    monkeypatch.setenv("PATH", "")

    assert find_executable("claude") == str(tool)


def test_resolve_uses_configured_override():
    agents = _agents(codex=AgentConfig("Codex", "/bin/sh", ["{prompt}"]))

    assert resolve_cli_executable(CLIType.CODEX, agents) == "/bin/sh"


def test_detect_installed_clis_skips_missing(monkeypatch):
    monkeypatch.setattr(agents_module, "CLI_SEARCH_DIRS", ())
    monkeypatch.setenv("PATH", "")
    agents = _agents()
    agents["gemini-cli"] = AgentConfig("Gemini CLI", "/bin/sh", ["{prompt}"])

    assert detect_installed_clis(agents) == {CLIType.GEMINI_CLI: "/bin/sh"}
