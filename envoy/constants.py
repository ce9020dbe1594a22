"""Constants used across Envoy.

This module defines shared constants to ensure consistency.
"""

# Remote session protocol
PROTOCOL_VERSION = "envoy-sessions/1"
DEFAULT_REMOTE_PORT = 8080
SSE_MEDIA_TYPE = "text/event-stream"

# Internal timeouts (seconds)
REMOTE_CONNECT_TIMEOUT = 5.0
REMOTE_LIST_TIMEOUT = 3.0
REMOTE_REQUEST_TIMEOUT = 10.0
TERMINATE_GRACE_PERIOD = 3.0
API_STOP_TIMEOUT_S = 5.0

# Process I/O
OUTPUT_READ_CHUNK_SIZE = 4096
SPAWN_FAILED_EXIT_CODE = 127  # Shell convention for "command not found / not executable"

# Listings display task ids truncated to this many characters
TASK_ID_DISPLAY_LENGTH = 8

# Control characters accepted by interactive sessions
CONTROL_BYTES: dict[str, bytes] = {
    "c": b"\x03",  # ETX - interrupt
    "d": b"\x04",  # EOT - end of input
    "z": b"\x1a",  # SUB - suspend
    "l": b"\x0c",  # FF - clear screen
}

# Common install locations searched before PATH ("~" expanded at lookup time)
CLI_SEARCH_DIRS = (
    "/usr/local/bin",
    "/opt/homebrew/bin",
    "~/.local/bin",
    "~/bin",
)

# Environment forced onto every agent process
AGENT_FORCED_ENV = {
    "TERM": "xterm-256color",
    "FORCE_COLOR": "1",
}

# Agent metadata (NOT user-configurable)
AGENT_METADATA: dict[str, dict[str, str | list[str]]] = {
    "claude-code": {
        "display_name": "Claude Code",
        "executable": "claude",
        "interactive_args": ["{prompt}"],
    },
    "codex": {
        "display_name": "Codex",
        "executable": "codex",
        "interactive_args": ["--task", "{prompt}", "--interactive"],
    },
    "gemini-cli": {
        "display_name": "Gemini CLI",
        "executable": "gemini",
        "interactive_args": ["chat", "--prompt", "{prompt}"],
    },
}
