"""
Tests for the message classifier.
Run with: pytest tests/test_classifier.py
"""

import pytest

from chattap.classifier import MessageClassifier, format_display_time, is_timestamp_or_status
from chattap.models import Observation, Signal


FIXED_NOW = 1_700_000_000_000


@pytest.fixture
def classifier():
    return MessageClassifier(clock=lambda: FIXED_NOW)


# ---------------------------------------------------------------------------
# Rejection
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", ["", "   ", "k", "4:22 PM", "16:05", "12/31/2024", "Today", "YESTERDAY",
                                  "typing...", "online", "last seen today at 9:14", "Delivered", "read"])
def test_rejects_non_messages(classifier, text):
    assert classifier.classify(Observation(text=text)) is None


def test_status_words_inside_a_sentence_are_kept():
    """Only a whole-text status label is dropped."""
    assert not is_timestamp_or_status("I already read it")
    assert not is_timestamp_or_status("sent you the file at 4:22 PM")


def test_two_characters_is_enough(classifier):
    msg = classifier.classify(Observation(text="Hi"))
    assert msg is not None
    assert msg.text == "Hi"


def test_stored_text_is_trimmed(classifier):
    msg = classifier.classify(Observation(text="  See you at 8 \n"))
    assert msg.text == "See you at 8"


# ---------------------------------------------------------------------------
# Direction
# ---------------------------------------------------------------------------

def test_plain_left_bubble_is_incoming(classifier):
    msg = classifier.classify(Observation(text="Are you coming tonight?", bounds_left=40, bounds_right=700))
    assert msg.is_incoming
    assert msg.confidence_signals == frozenset()


def test_checkmark_glyph_means_outgoing(classifier):
    msg = classifier.classify(Observation(text="On my way", has_checkmark_glyph=True))
    assert not msg.is_incoming
    assert Signal.CHECKMARK in msg.confidence_signals


def test_checkmark_in_description_means_outgoing(classifier):
    msg = classifier.classify(Observation(text="On my way", content_description="On my way ✓✓"))
    assert not msg.is_incoming


def test_status_keyword_means_outgoing(classifier):
    msg = classifier.classify(Observation(text="See you", content_description="See you, Delivered"))
    assert not msg.is_incoming
    assert Signal.STATUS_KEYWORD in msg.confidence_signals


def test_right_alignment_alone_stays_incoming(classifier):
    """A centered system notice can sit right of 60% too."""
    msg = classifier.classify(Observation(text="Messages are end-to-end encrypted",
                                          bounds_left=700, screen_width=1080))
    assert msg.is_incoming
    assert Signal.RIGHT_ALIGNED in msg.confidence_signals


def test_right_alignment_with_background_hint_is_outgoing(classifier):
    msg = classifier.classify(Observation(text="Sounds good", bounds_left=700, screen_width=1080,
                                          background_hint=True))
    assert not msg.is_incoming
    assert {Signal.RIGHT_ALIGNED, Signal.BACKGROUND_HINT} <= msg.confidence_signals


def test_right_align_threshold_is_configurable():
    c = MessageClassifier(right_align_ratio=0.8)
    assert Signal.RIGHT_ALIGNED not in c.signals(Observation(text="x", bounds_left=700, screen_width=1080))
    assert Signal.RIGHT_ALIGNED in c.signals(Observation(text="x", bounds_left=900, screen_width=1080))


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------

def test_timestamps_and_contact(classifier):
    msg = classifier.classify(Observation(text="Hello there"), contact_name="Alice")
    assert msg.timestamp_millis == FIXED_NOW
    assert msg.contact_name == "Alice"
    assert msg.display_timestamp == format_display_time(FIXED_NOW)


def test_observed_display_time_wins(classifier):
    msg = classifier.classify(Observation(text="Hello there", display_timestamp="9:03 AM"))
    assert msg.display_timestamp == "9:03 AM"


def test_display_time_format():
    text = format_display_time(FIXED_NOW)
    assert text.endswith(("AM", "PM"))
    assert not text.startswith("0")
    assert is_timestamp_or_status(text)


def test_from_config():
    c = MessageClassifier.from_config({"classifier": {"right_align_ratio": 0.5, "min_text_length": 3}})
    assert c.right_align_ratio == 0.5
    assert c.rejects("ok")


def test_observation_from_camel_case():
    obs = Observation.from_dict({"text": "Hi", "boundsLeft": 800, "hasCheckmarkGlyph": True, "screenWidth": 1440})
    assert obs.bounds_left == 800
    assert obs.has_checkmark_glyph
    assert obs.screen_width == 1440
