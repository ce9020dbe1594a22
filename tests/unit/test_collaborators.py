"""Unit tests for chat and indexing collaborator helpers."""

from dataclasses import dataclass

import pytest

from envoy.core.collaborators import (
    ChatMessage,
    ChatService,
    IndexingService,
    IndexingSnapshot,
    collect_chat_response,
)


class EchoChat:
    def __init__(self, chunks):
        self.chunks = chunks
        self.calls = []

    async def chat(self, prompt, system_prompt, history):
        self.calls.append((prompt, system_prompt, list(history)))
        for chunk in self.chunks:
            yield chunk


@dataclass
class FakeIndexer:
    is_indexing: bool
    indexing_progress: float
    indexing_status: str


@pytest.mark.asyncio
async def test_chunks_are_concatenated_in_arrival_order():
    service = EchoChat(["Hel", "lo", "", " there"])
    history = [ChatMessage(role="user", content="earlier")]

    response = await collect_chat_response(service.chat("hi", "be brief", history))

    assert response == "Hello there"
    assert service.calls == [("hi", "be brief", history)]


@pytest.mark.asyncio
async def test_empty_stream_means_no_response():
    assert await collect_chat_response(EchoChat([]).chat("hi", None, [])) is None
    assert await collect_chat_response(EchoChat(["", ""]).chat("hi", None, [])) is None


def test_services_satisfy_protocols():
    assert isinstance(EchoChat([]), ChatService)
    assert isinstance(FakeIndexer(False, 0.0, "idle"), IndexingService)


def test_indexing_snapshot_clamps_progress():
    assert IndexingSnapshot.from_service(FakeIndexer(True, 1.7, "Indexing")).progress == 1.0
    assert IndexingSnapshot.from_service(FakeIndexer(True, -0.2, "Indexing")).progress == 0.0

    snapshot = IndexingSnapshot.from_service(FakeIndexer(True, 0.25, "Indexing 10 files"))
    assert snapshot == IndexingSnapshot(is_indexing=True, progress=0.25, status="Indexing 10 files")
