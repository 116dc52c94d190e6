"""
Tests for the trigger policy.
Run with: pytest tests/test_triggers.py
"""

from chattap.models import ClassifiedMessage, Conversation, TriggerState
from chattap.triggers import (
    SuggestionKind,
    TriggerAction,
    TriggerPolicy,
    common_prefix_length,
    is_placeholder,
)


def _conv(*messages):
    conv = Conversation(contact_name="Alice")
    for text, incoming in messages:
        conv.history.append(ClassifiedMessage(text=text, is_incoming=incoming))
    return conv


# ---------------------------------------------------------------------------
# Reply axis
# ---------------------------------------------------------------------------

def test_empty_history_does_nothing():
    assert TriggerPolicy().evaluate(Conversation(contact_name="Alice")) == TriggerAction.NONE


def test_incoming_requests_suggestions():
    conv = _conv(("Are you coming?", True))
    assert TriggerPolicy().evaluate(conv) == TriggerAction.REQUEST
    assert conv.trigger_state == TriggerState.SUGGESTIONS_REQUESTED


def test_second_incoming_coalesces():
    policy = TriggerPolicy()
    conv = _conv(("Are you coming?", True))
    policy.evaluate(conv)
    conv.history.append(ClassifiedMessage(text="Dinner is at 8", is_incoming=True))
    assert policy.evaluate(conv) == TriggerAction.COALESCE
    assert conv.trigger_state == TriggerState.SUGGESTIONS_REQUESTED


def test_outgoing_clears_suggestions():
    policy = TriggerPolicy()
    conv = _conv(("Are you coming?", True))
    policy.evaluate(conv)
    conv.suggested_replies = ["Yes!", "Running late"]

    conv.history.append(ClassifiedMessage(text="Yes, see you there", is_incoming=False))
    assert policy.evaluate(conv) == TriggerAction.CLEAR
    assert conv.suggested_replies == []
    assert conv.trigger_state == TriggerState.NONE


def test_outgoing_does_not_touch_improvement_state():
    conv = _conv(("ok then", False))
    conv.trigger_state = TriggerState.IMPROVEMENT_REQUESTED
    TriggerPolicy().evaluate(conv)
    assert conv.trigger_state == TriggerState.IMPROVEMENT_REQUESTED


def test_failed_reply_returns_to_none():
    policy = TriggerPolicy()
    conv = _conv(("Are you coming?", True))
    policy.evaluate(conv)
    policy.on_result(conv, SuggestionKind.REPLY, ok=False)
    assert conv.trigger_state == TriggerState.NONE
    # A later message can fire again
    conv.history.append(ClassifiedMessage(text="Hello?", is_incoming=True))
    assert policy.evaluate(conv) == TriggerAction.REQUEST


def test_successful_reply_keeps_requested_state():
    policy = TriggerPolicy()
    conv = _conv(("Are you coming?", True))
    policy.evaluate(conv)
    policy.on_result(conv, SuggestionKind.REPLY, ok=True)
    assert conv.trigger_state == TriggerState.SUGGESTIONS_REQUESTED


def test_stale_reply_returns_to_none():
    policy = TriggerPolicy()
    conv = _conv(("Are you coming?", True))
    policy.evaluate(conv)
    policy.on_result(conv, SuggestionKind.REPLY, ok=True, still_valid=False)
    assert conv.trigger_state == TriggerState.NONE


# ---------------------------------------------------------------------------
# Draft axis
# ---------------------------------------------------------------------------

def test_placeholders():
    for text in ["", "  ", "Message", "Type a message", "enter message"]:
        assert is_placeholder(text)
    assert not is_placeholder("Message me later")


def test_common_prefix_length():
    assert common_prefix_length("hey I wa", "hey I wanted to") == 8
    assert common_prefix_length("abc", "xyz") == 0
    assert common_prefix_length("", "abc") == 0


def test_short_draft_never_fires_and_clears_improvements():
    conv = _conv()
    conv.improved_suggestions = ["old"]
    decision = TriggerPolicy().evaluate_draft(conv, "hey ")
    assert not decision.fire
    assert conv.improved_suggestions == []


def test_placeholder_never_fires():
    assert not TriggerPolicy().evaluate_draft(_conv(), "Type a message").fire


def test_draft_growth_scenario():
    policy = TriggerPolicy()
    conv = _conv()

    first = policy.evaluate_draft(conv, "hey I wa")
    assert first.fire
    assert first.draft == "hey I wa"
    assert conv.trigger_state == TriggerState.IMPROVEMENT_REQUESTED
    policy.on_result(conv, SuggestionKind.IMPROVEMENT, ok=True)

    second = policy.evaluate_draft(conv, "hey I wanted to")
    assert second.fire                          # 7 new characters
    policy.on_result(conv, SuggestionKind.IMPROVEMENT, ok=True)

    third = policy.evaluate_draft(conv, "hey I wanted to ")
    assert not third.fire                       # trailing space is trimmed away
    assert conv.last_improved_draft == "hey I wanted to"


def test_small_edit_is_not_significant():
    policy = TriggerPolicy()
    assert not policy.is_significant_edit("hello there", "hello ther")
    assert policy.is_significant_edit("hello there friend", "hello there")
    assert policy.is_significant_edit("hello", "")


def test_improvement_result_returns_to_none():
    policy = TriggerPolicy()
    conv = _conv()
    policy.evaluate_draft(conv, "can we move it")
    policy.on_result(conv, SuggestionKind.IMPROVEMENT, ok=False)
    assert conv.trigger_state == TriggerState.NONE


def test_from_config():
    policy = TriggerPolicy.from_config({"suggestions": {"min_draft_length": 3, "min_draft_growth": 2}})
    assert policy.min_draft_length == 3
    assert policy.min_draft_growth == 2
