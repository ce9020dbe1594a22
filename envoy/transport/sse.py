"""Server-Sent Events framing for session output streams.

Each event is one `data:` line holding a JSON object followed by a blank line.
"""

from __future__ import annotations

import json
from typing import AsyncIterator


def encode_event(payload: dict[str, object]) -> str:
    return f"data: {json.dumps(payload, separators=(',', ':'))}\n\n"


async def iter_events(lines: AsyncIterator[str]) -> AsyncIterator[dict[str, object]]:
    """Decode SSE lines into JSON payloads.

    Comment lines (`:`) and fields other than `data` are ignored; multi-line
    data fields are joined with newlines as the SSE format specifies.
    """
    data_lines: list[str] = []
    async for line in lines:
        if not line:
            if data_lines:
                payload = json.loads("\n".join(data_lines))
                data_lines = []
                if isinstance(payload, dict):
                    yield payload
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)

    if data_lines:
        payload = json.loads("\n".join(data_lines))
        if isinstance(payload, dict):
            yield payload
