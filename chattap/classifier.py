"""
Message classifier: decides who wrote a bubble on the chat screen.

There is no documented contract for telling sent from received messages, so
the decision is a weighted OR of independent weak signals:

  1. Check glyphs (single/double tick), only ever drawn on sent messages
  2. Content description naming a delivery status (sent, delivered, read, seen)
  3. Bubble pushed to the right of the screen, but only together with a
     background hint or status keyword (centered system notices sit right too)

Anything else is incoming. Timestamps, dates and status labels are rejected
before classification so they never reach the history.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime

from chattap.models import ClassifiedMessage, Observation, Signal

logger = logging.getLogger(__name__)


CHECK_GLYPHS = ("✓", "✔")
STATUS_KEYWORDS = ("sent", "delivered", "read", "seen")
BACKGROUND_KEYWORDS = ("green", "teal", "outgoing")

_TIMESTAMP_PATTERNS = [
    re.compile(r"\d{1,2}:\d{2}(\s?[AaPp][Mm])?"),      # 4:22 PM / 16:22
    re.compile(r"\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}"),    # 12/31/2024
    re.compile(r"(?i)today|yesterday"),
]

_STATUS_LABELS = re.compile(
    r"(?i)(typing(…|\.\.\.)?|online|last seen.*|delivered|read|seen|sending|sent)"
)


def is_timestamp_or_status(text: str) -> bool:
    """True if the whole text is a time label, a date, or a presence/status label."""
    stripped = text.strip()
    if any(p.fullmatch(stripped) for p in _TIMESTAMP_PATTERNS):
        return True
    return _STATUS_LABELS.fullmatch(stripped) is not None


def format_display_time(millis: int) -> str:
    """Format like the chat UI does: '4:22 PM'."""
    dt = datetime.fromtimestamp(millis / 1000)
    return dt.strftime("%I:%M %p").lstrip("0")


class MessageClassifier:
    """
    Classifies raw observations into incoming/outgoing messages.

    classify() returns None for observations that are not chat content.
    """

    def __init__(
        self,
        right_align_ratio: float = 0.6,
        min_text_length: int = 2,
        clock=None,
    ):
        self.right_align_ratio = right_align_ratio
        self.min_text_length = min_text_length
        self._clock = clock or (lambda: int(time.time() * 1000))

    @classmethod
    def from_config(cls, cfg: dict) -> "MessageClassifier":
        c_cfg = cfg.get("classifier", {})
        return cls(
            right_align_ratio=float(c_cfg.get("right_align_ratio", 0.6)),
            min_text_length=int(c_cfg.get("min_text_length", 2)),
        )

    def signals(self, obs: Observation) -> set[Signal]:
        """Collect every outgoing signal present on the observation."""
        found: set[Signal] = set()
        desc = obs.content_description.lower()

        if obs.has_checkmark_glyph or any(g in obs.text or g in desc for g in CHECK_GLYPHS):
            found.add(Signal.CHECKMARK)
        if any(k in desc for k in STATUS_KEYWORDS):
            found.add(Signal.STATUS_KEYWORD)
        if obs.background_hint or any(k in desc for k in BACKGROUND_KEYWORDS):
            found.add(Signal.BACKGROUND_HINT)
        if obs.screen_width > 0 and obs.bounds_left > obs.screen_width * self.right_align_ratio:
            found.add(Signal.RIGHT_ALIGNED)
        return found

    @staticmethod
    def is_outgoing(signals: set[Signal]) -> bool:
        if Signal.CHECKMARK in signals or Signal.STATUS_KEYWORD in signals:
            return True
        # Position alone is not enough
        return Signal.RIGHT_ALIGNED in signals and (
            Signal.BACKGROUND_HINT in signals or Signal.STATUS_KEYWORD in signals
        )

    def rejects(self, text: str) -> bool:
        stripped = text.strip()
        if len(stripped) < self.min_text_length:
            return True
        return is_timestamp_or_status(stripped)

    def classify(self, obs: Observation, contact_name: str = "") -> ClassifiedMessage | None:
        """Classify one observation, or return None if it is not a chat message."""
        if self.rejects(obs.text):
            logger.debug("Rejected observation %r", obs.text[:40])
            return None

        signals = self.signals(obs)
        outgoing = self.is_outgoing(signals)
        now = self._clock()

        msg = ClassifiedMessage(
            text=obs.text.strip(),
            is_incoming=not outgoing,
            confidence_signals=frozenset(signals),
            timestamp_millis=now,
            display_timestamp=obs.display_timestamp or format_display_time(now),
            contact_name=contact_name,
        )
        logger.debug(
            "Classified %r as %s (signals=%s)",
            obs.text[:40],
            "outgoing" if outgoing else "incoming",
            sorted(s.value for s in signals),
        )
        return msg
