import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from chat_core.api import service
from chat_core.chat.orchestrator import MessageOrchestrator
from chat_core.chat.quota import MemoryQuotaStorage, UsageQuotaTracker
from chat_core.infrastructure.storage.json_store import JsonConversationStore


class EchoClient:
    async def send(self, history, model_id, on_chunk, conversation_id=None):
        text = f"echo: {history[-1].content}"
        on_chunk(text)
        return text


class FixedTitles:
    async def generate_title(self, exchange):
        return "Echo test"


@pytest.fixture
def wired(tmp_path, monkeypatch):
    store = JsonConversationStore(root=Path(tmp_path) / ".storage")
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    quota = UsageQuotaTracker(MemoryQuotaStorage(), limit=1, reset_hour=2, clock=lambda: now)

    def build(owner_id=None):
        return MessageOrchestrator(
            store, EchoClient(), title_generator=FixedTitles(), quota=quota, owner_id=owner_id, default_model="model-a"
        )

    monkeypatch.setattr(service, "_orchestrators", {})
    monkeypatch.setattr(service, "_quota", quota)
    monkeypatch.setattr(service, "build_orchestrator", build)
    return store


@pytest.mark.asyncio
async def test_run_chat_round_trip(wired):
    result = await service.run_chat("hello", owner_id="u1")

    assert result["error"] is None
    assert result["user_message"]["content"] == "hello"
    assert result["assistant_message"]["content"] == "echo: hello"
    cid = result["conversation_id"]

    convs = await service.list_conversations("u1")
    assert [(c["id"], c["title"]) for c in convs] == [(cid, "Echo test")]

    messages = await service.get_conversation_messages(cid, owner_id="u1")
    assert [m["role"] for m in messages] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_run_chat_reports_quota_for_anonymous(wired):
    first = await service.run_chat("one")
    assert first["error"] is None

    second = await service.run_chat("two")
    assert second["error"] == "quota_exhausted"

    status = service.quota_status()
    assert status["count"] == 1
    assert status["remaining"] == 0
    assert status["reset_time"] == "02:00"


@pytest.mark.asyncio
async def test_run_chat_marks_busy_and_blank_requests_ignored(tmp_path, monkeypatch):
    gate = asyncio.Event()
    started = asyncio.Event()

    class GatedClient:
        async def send(self, history, model_id, on_chunk, conversation_id=None):
            started.set()
            await gate.wait()
            on_chunk("done")
            return "done"

    store = JsonConversationStore(root=Path(tmp_path) / ".storage")
    orch = MessageOrchestrator(store, GatedClient(), owner_id="u1", default_model="model-a")
    monkeypatch.setattr(service, "_orchestrators", {"u1": orch})

    first = asyncio.create_task(service.run_chat("first", owner_id="u1"))
    await started.wait()

    busy = await service.run_chat("second", owner_id="u1")
    assert busy["ignored"] is True
    assert busy["user_message"] is None
    assert busy["assistant_message"] is None

    gate.set()
    result = await first
    assert result["ignored"] is False
    assert result["user_message"]["content"] == "first"
    assert result["assistant_message"]["content"] == "done"

    blank = await service.run_chat("   ", owner_id="u1")
    assert blank["ignored"] is True
    assert blank["conversation_id"] == result["conversation_id"]
