"""Interfaces of the services the session views consume but do not own.

The chat and indexing services live outside this package. Only the consumed
surface is described here, plus the small helpers the views build on it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import AsyncIterator, Optional, Protocol, Sequence, runtime_checkable


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "user" | "assistant" | "system"
    content: str


@runtime_checkable
class ChatService(Protocol):
    """Streaming LLM chat."""

    def chat(
        self, prompt: str, system_prompt: Optional[str], history: Sequence[ChatMessage]
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class IndexingService(Protocol):
    """Background file indexing, observed read-only."""

    @property
    def is_indexing(self) -> bool: ...

    @property
    def indexing_progress(self) -> float: ...

    @property
    def indexing_status(self) -> str: ...


async def collect_chat_response(chunks: AsyncIterator[str]) -> Optional[str]:
    """Concatenate streamed chunks in arrival order.

    Returns:
        The full response, or None when the stream produced no text
    """
    parts: list[str] = []
    async for chunk in chunks:
        if chunk:
            parts.append(chunk)
    if not parts:
        return None
    return "".join(parts)


@dataclass(frozen=True)
class IndexingSnapshot:
    is_indexing: bool
    progress: float
    status: str

    @classmethod
    def from_service(cls, service: IndexingService) -> "IndexingSnapshot":
        progress = float(service.indexing_progress)
        return cls(
            is_indexing=bool(service.is_indexing),
            progress=min(1.0, max(0.0, progress)),
            status=str(service.indexing_status),
        )
