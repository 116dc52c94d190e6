"""
Tests for the wire log and the tap viewer.
Run with: pytest tests/test_wiretap.py
"""

import json

from chattap.models import Signal
from chattap.wiretap import WireLog, _format_entry, live_tap


def _entries(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def test_log_message_entry(tmp_path):
    path = tmp_path / "sub" / "wire.jsonl"
    wire = WireLog(str(path))
    wire.log_message("Alice", "On my way", is_incoming=False, signals={Signal.CHECKMARK, Signal.RIGHT_ALIGNED})
    wire.close()

    [entry] = _entries(path)
    assert entry["dir"] == "inbound"
    assert entry["role"] == "you"
    assert entry["chat"] == "Alice"
    assert entry["content"] == "On my way"
    assert entry["len"] == 9
    assert entry["signals"] == "checkmark,rightAligned"


def test_log_suggestions_and_trigger(tmp_path):
    path = tmp_path / "wire.jsonl"
    wire = WireLog(str(path))
    wire.log_trigger("Alice", "request")
    wire.log_suggestions("Alice", "reply", ["I'll get back to you soon."], error="HTTP 500", fallback=True)
    wire.log_suggestions("Alice", "improvement", ["Better"])
    wire.close()

    trigger, fallback, improvement = _entries(path)
    assert trigger["role"] == "trigger" and trigger["action"] == "request"
    assert fallback["fallback"] is True
    assert fallback["error"] == "HTTP 500"
    assert "fallback" not in improvement
    assert "error" not in improvement


def test_long_content_is_truncated(tmp_path):
    path = tmp_path / "wire.jsonl"
    wire = WireLog(str(path))
    wire.log("inbound", "contact", "x" * 5000, chat="Alice")
    wire.close()

    [entry] = _entries(path)
    assert entry["len"] == 5000
    assert "chars truncated" in entry["content"]
    assert len(entry["content"]) < 2200


def test_format_entry():
    entry = {"ts": "2026-01-01T12:34:56+00:00", "dir": "inbound", "role": "contact",
             "chat": "Alice", "len": 5, "content": "Hello"}
    text = _format_entry(entry)
    assert "12:34:56" in text
    assert "CONTACT" in text
    assert "[Alice]" in text
    assert "Hello" in text
    assert _format_entry(entry, raw=True) == json.dumps(entry, ensure_ascii=False)


def test_live_tap_filters(tmp_path, capsys):
    path = tmp_path / "wire.jsonl"
    wire = WireLog(str(path))
    wire.log_message("Alice", "from alice", is_incoming=True)
    wire.log_message("Bob", "from bob", is_incoming=True)
    wire.close()

    live_tap(log_path=str(path), follow=False, chat_filter="Bob", raw=True)
    out = capsys.readouterr().out.strip().splitlines()
    assert len(out) == 1
    assert json.loads(out[0])["content"] == "from bob"


def test_live_tap_missing_file(tmp_path, capsys):
    live_tap(log_path=str(tmp_path / "nope.jsonl"), follow=False)
    assert "No wire log found" in capsys.readouterr().out
