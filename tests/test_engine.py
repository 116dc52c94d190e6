"""
End-to-end tests for ChatEngine: observations in, suggestions out.
Run with: pytest tests/test_engine.py
"""

import asyncio
import json
import threading

import pytest
from unittest.mock import AsyncMock, MagicMock

from chattap.backends.base import BackendResponse
from chattap.engine import ChatEngine, ChatState
from chattap.errors import ChatTapError, SyncError
from chattap.models import ClassifiedMessage, Observation, ObservationOutcome, TriggerState
from chattap.wiretap import WireLog

REPLIES = '{"replies": ["Sure", "On my way"]}'


class FakeBackend:
    def __init__(self, text=REPLIES):
        self.text = text
        self.prompts = []
        self.name = "fake"

    async def complete(self, prompt, temperature=0.7):
        self.prompts.append(prompt)
        return BackendResponse(ok=True, text=self.text)


def _client(accepted=True, history=None):
    client = MagicMock()
    client.check_acceptance = AsyncMock(return_value=accepted)
    client.accept_chat = AsyncMock(return_value="2026-01-01T00:00:00Z")
    client.get_messages = AsyncMock(return_value=list(history or []))
    client.store_messages = AsyncMock(return_value=1)
    client.token = "tok"
    return client


def _incoming(text):
    return Observation(text=text, bounds_left=40, bounds_right=600)


def _outgoing(text):
    return Observation(text=text, bounds_left=500, bounds_right=1040, has_checkmark_glyph=True)


def _engine(backend=None, **kwargs):
    kwargs.setdefault("spacing_ms", 50)
    return ChatEngine(backend or FakeBackend(), **kwargs)


# ---------------------------------------------------------------------------
# Observation pipeline
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_observe_classifies_dedups_and_requests_replies():
    backend = FakeBackend()
    engine = _engine(backend)

    outcomes = engine.observe("Alice", [
        _incoming("Hi"),
        _incoming("Hi"),
        _incoming("How are you?"),
        Observation(text="4:22 PM"),
    ])
    assert outcomes == [
        ObservationOutcome.APPENDED,
        ObservationOutcome.DUPLICATE,
        ObservationOutcome.APPENDED,
        ObservationOutcome.REJECTED,
    ]
    assert [m.text for m in engine.conversation.history] == ["Hi", "How are you?"]

    await engine.drain(timeout=2)
    assert engine.suggested_replies == ["Sure", "On my way"]
    assert len(backend.prompts) == 1
    assert "How are you?" in backend.prompts[0]


@pytest.mark.asyncio
async def test_outgoing_message_clears_replies():
    engine = _engine()
    engine.observe("Alice", [_incoming("Are you coming?")])
    await engine.drain(timeout=2)
    assert engine.suggested_replies

    engine.observe("Alice", [_outgoing("Yes, leaving now")])
    assert engine.suggested_replies == []
    assert engine.conversation.trigger_state == TriggerState.NONE
    assert not engine.conversation.history[-1].is_incoming


@pytest.mark.asyncio
async def test_only_outgoing_never_requests():
    backend = FakeBackend()
    engine = _engine(backend)
    engine.observe("Alice", [_outgoing("Hey!"), _outgoing("Are you there?")])
    await engine.drain(timeout=2)
    assert backend.prompts == []
    assert not engine.requesting_replies


@pytest.mark.asyncio
async def test_on_result_callback_receives_delivered_results():
    seen = []
    engine = _engine(on_result=seen.append)
    engine.observe("Alice", [_incoming("Are you coming?")])
    await engine.drain(timeout=2)
    assert len(seen) == 1
    assert seen[0].contact_name == "Alice"


@pytest.mark.asyncio
async def test_switching_chat_starts_over():
    engine = _engine()
    engine.observe("Alice", [_incoming("Are you coming?")])
    await engine.drain(timeout=2)

    engine.observe("Bob", [_incoming("Did you get my email?")])
    assert engine.conversation.contact_name == "Bob"
    assert [m.text for m in engine.conversation.history] == ["Did you get my email?"]
    await engine.drain(timeout=2)
    assert engine.suggested_replies == ["Sure", "On my way"]


@pytest.mark.asyncio
async def test_window_holds_thirty_messages():
    engine = _engine(history_limit=30)
    engine.observe("Alice", [_incoming(f"message number {i}") for i in range(40)])
    history = engine.conversation.history
    assert len(history) == 30
    assert history[0].text == "message number 10"
    await engine.drain(timeout=2)


@pytest.mark.asyncio
async def test_transcript():
    engine = _engine()
    engine.observe("Alice", [Observation(text="Lunch?", display_timestamp="12:01 PM"),
                             Observation(text="Sure", display_timestamp="12:02 PM", has_checkmark_glyph=True)])
    text = engine.transcript()
    assert "(Alice 12:01 PM) Lunch?" in text
    assert "(YOU 12:02 PM) Sure" in text
    await engine.drain(timeout=2)


# ---------------------------------------------------------------------------
# Drafts and user actions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_improve_draft():
    backend = FakeBackend('{"replies": ["Hey, I wanted to ask you something"]}')
    engine = _engine(backend)
    engine.observe("Alice", [_outgoing("Morning!")])

    engine.update_draft("hey I wa")
    assert backend.prompts == []

    fut = engine.improve_draft()
    assert fut is not None
    await fut
    assert engine.improved_suggestions == ["Hey, I wanted to ask you something"]
    assert engine.improve_draft("hey I wa ") is None


@pytest.mark.asyncio
async def test_improve_draft_without_chat():
    assert _engine().improve_draft("hello there") is None


class SlowBackend(FakeBackend):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    async def complete(self, prompt, temperature=0.7):
        self.prompts.append(prompt)
        await asyncio.sleep(self.delay)
        return BackendResponse(ok=True, text=self.text)


@pytest.mark.asyncio
async def test_message_during_request_does_not_dispatch_again():
    backend = SlowBackend(0.2)
    engine = _engine(backend, spacing_ms=300)

    engine.observe("Alice", [_incoming("Are you coming?")])
    await asyncio.sleep(0.05)
    engine.observe("Alice", [_incoming("Hello??")])

    await engine.drain(timeout=2)
    await asyncio.sleep(0.4)
    assert len(backend.prompts) == 1
    assert engine.suggested_replies == ["Sure", "On my way"]


@pytest.mark.asyncio
async def test_padded_repeat_is_a_duplicate():
    engine = _engine()
    outcomes = engine.observe("Alice", [_incoming("Hi"), _incoming("Hi "), _incoming("  Hi")])
    assert outcomes == [
        ObservationOutcome.APPENDED,
        ObservationOutcome.DUPLICATE,
        ObservationOutcome.DUPLICATE,
    ]
    assert [m.text for m in engine.conversation.history] == ["Hi"]
    await engine.drain(timeout=2)


@pytest.mark.asyncio
async def test_refresh_only_while_awaiting_reply():
    backend = FakeBackend()
    engine = _engine(backend)
    engine.observe("Alice", [_incoming("Are you coming?")])
    await engine.drain(timeout=2)

    result = await engine.refresh_suggestions()
    assert result.delivered
    assert len(backend.prompts) == 2

    engine.observe("Alice", [_outgoing("yes")])
    assert engine.refresh_suggestions() is None


@pytest.mark.asyncio
async def test_reset_clears_chat():
    engine = _engine()
    engine.observe("Alice", [_incoming("Are you coming?")])
    engine.reset()
    await engine.drain(timeout=2)
    assert engine.conversation.history == []
    assert engine.suggested_replies == []


@pytest.mark.asyncio
async def test_logout_drops_everything():
    client = _client()
    engine = _engine(client=client)
    engine.observe("Alice", [_incoming("Are you coming?")])
    engine.logout()
    await engine.drain(timeout=2)
    assert engine.conversation is None
    assert client.token == ""
    assert engine.status()["conversation"] is None


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_acceptance_gate():
    client = _client(accepted=False)
    engine = _engine(client=client, acceptance_required=True)

    outcomes = engine.observe("Alice", [_incoming("Hi there")])
    assert outcomes == [ObservationOutcome.IGNORED]
    await engine.drain(timeout=2)
    assert engine.chat_state("Alice") == ChatState.NOT_ACCEPTED
    assert engine.observe("Alice", [_incoming("Hi there")]) == [ObservationOutcome.IGNORED]

    assert await engine.accept_chat("Alice") == ChatState.ACCEPTED
    client.accept_chat.assert_awaited_once_with("Alice")
    assert engine.observe("Alice", [_incoming("Hi there")]) == [ObservationOutcome.APPENDED]
    await engine.drain(timeout=2)


@pytest.mark.asyncio
async def test_acceptance_check_failure_leaves_unknown():
    client = _client()
    client.check_acceptance = AsyncMock(side_effect=SyncError("down"))
    engine = _engine(client=client, acceptance_required=True)
    engine.observe("Alice", [_incoming("Hi there")])
    await engine.drain(timeout=2)
    assert engine.chat_state("Alice") == ChatState.UNKNOWN


@pytest.mark.asyncio
async def test_accepted_chat_loads_stored_history():
    stored = [
        ClassifiedMessage(text="Old question", is_incoming=True, display_timestamp="9:00 AM"),
        ClassifiedMessage(text="Old answer", is_incoming=False, display_timestamp="9:01 AM"),
    ]
    client = _client(accepted=True, history=stored)
    engine = _engine(client=client, acceptance_required=True)

    engine.observe("Alice", [])
    await engine.drain(timeout=2)
    client.get_messages.assert_awaited_once_with("Alice", limit=30)
    assert [m.text for m in engine.conversation.history] == ["Old question", "Old answer"]
    assert engine.conversation.unsynced == []


@pytest.mark.asyncio
async def test_new_messages_are_synced():
    client = _client()
    engine = _engine(client=client, sync_debounce_ms=50)
    engine.observe("Alice", [_incoming("Hi there")])
    await engine.drain(timeout=2)

    client.store_messages.assert_awaited_once()
    chat, batch = client.store_messages.await_args.args
    assert chat == "Alice"
    assert [m.text for m in batch] == ["Hi there"]


@pytest.mark.asyncio
async def test_switch_flushes_pending_messages():
    client = _client()
    engine = _engine(client=client, sync_debounce_ms=10_000)
    engine.observe("Alice", [_incoming("first")])
    engine.observe("Alice", [_incoming("second")])      # inside the debounce window
    engine.observe("Bob", [_incoming("hello")])
    await engine.drain(timeout=2)

    sent = [(c.args[0], [m.text for m in c.args[1]]) for c in client.store_messages.await_args_list]
    assert ("Alice", ["first"]) in sent
    assert ("Alice", ["second"]) in sent


# ---------------------------------------------------------------------------
# Threading and wire log
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_submit_threadsafe():
    engine = _engine()
    engine.bind_loop()

    t = threading.Thread(target=engine.submit_threadsafe, args=("Alice", [_incoming("Hi from a thread")]))
    t.start()
    t.join()
    for _ in range(50):
        if engine.conversation is not None:
            break
        await asyncio.sleep(0.01)

    assert engine.conversation.contact_name == "Alice"
    await engine.drain(timeout=2)


def test_submit_threadsafe_requires_loop():
    with pytest.raises(ChatTapError):
        _engine().submit_threadsafe("Alice", [])


@pytest.mark.asyncio
async def test_wire_log_records_events(tmp_path):
    wire = WireLog(str(tmp_path / "wire.jsonl"))
    engine = _engine(wire=wire)
    engine.observe("Alice", [_incoming("Are you coming?")])
    await engine.drain(timeout=2)
    engine.close()

    entries = [json.loads(line) for line in (tmp_path / "wire.jsonl").read_text().splitlines()]
    roles = [e["role"] for e in entries]
    assert roles == ["contact", "trigger", "suggestion"]
    assert entries[0]["chat"] == "Alice"
    assert entries[1]["action"] == "request"
    assert entries[2]["content"] == "Sure\nOn my way"


def test_from_config_uses_given_backend(tmp_path):
    cfg = {
        "conversation": {"history_limit": 10},
        "suggestions": {"spacing_ms": 1234, "fallback_reply": "brb"},
        "sync": {"enabled": False},
        "wiretap": {"enabled": False},
        "acceptance": {"required": True},
    }
    backend = FakeBackend()
    engine = ChatEngine.from_config(cfg, backend=backend)
    assert engine.store.history_limit == 10
    assert engine.coordinator.spacing_ms == 1234
    assert engine.coordinator.fallback_reply == "brb"
    assert engine.coordinator.backend is backend
    assert engine.client is None
    assert engine.wire is None
    assert engine.chat_state("Alice") == ChatState.UNKNOWN
