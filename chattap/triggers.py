"""
Trigger policy: when should we ask the AI for something?

Two independent axes:

  Reply suggestions: evaluated after every successful append. Suggestions
  are replies to what the other party said, so they are requested only
  while the last message is incoming and dropped as soon as the local user
  has replied.

  Draft improvement: fired only on explicit request with the current draft.
  Small edits to an already-improved draft are suppressed.

This is the only place that moves Conversation.trigger_state.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from chattap.models import Conversation, TriggerState

logger = logging.getLogger(__name__)


PLACEHOLDER_TEXTS = ("message", "type a message", "enter message")


class TriggerAction(str, enum.Enum):
    NONE = "none"
    REQUEST = "request"      # fire a reply-suggestion request
    COALESCE = "coalesce"    # context changed while a request is outstanding
    CLEAR = "clear"          # local user replied; drop suggestions


class SuggestionKind(str, enum.Enum):
    REPLY = "reply"
    IMPROVEMENT = "improvement"


@dataclass
class DraftDecision:
    fire: bool
    draft: str = ""
    reason: str = ""


def is_placeholder(text: str) -> bool:
    """True for empty input or the input field's hint text."""
    trimmed = text.strip().lower()
    return not trimmed or trimmed in PLACEHOLDER_TEXTS


def common_prefix_length(a: str, b: str) -> int:
    n = min(len(a), len(b))
    i = 0
    while i < n and a[i] == b[i]:
        i += 1
    return i


class TriggerPolicy:
    """State machine over Conversation.trigger_state."""

    def __init__(self, min_draft_length: int = 5, min_draft_growth: int = 5):
        self.min_draft_length = min_draft_length
        self.min_draft_growth = min_draft_growth

    @classmethod
    def from_config(cls, cfg: dict) -> "TriggerPolicy":
        s_cfg = cfg.get("suggestions", {})
        return cls(
            min_draft_length=int(s_cfg.get("min_draft_length", 5)),
            min_draft_growth=int(s_cfg.get("min_draft_growth", 5)),
        )

    # ------------------------------------------------------------------
    # Reply axis
    # ------------------------------------------------------------------

    def evaluate(self, conversation: Conversation) -> TriggerAction:
        """Decide what the latest append means for reply suggestions."""
        last = conversation.last_message
        if last is None:
            return TriggerAction.NONE

        if not last.is_incoming:
            if conversation.trigger_state == TriggerState.SUGGESTIONS_REQUESTED:
                conversation.trigger_state = TriggerState.NONE
            conversation.suggested_replies.clear()
            logger.debug("Last message in '%s' is ours; clearing replies", conversation.contact_name)
            return TriggerAction.CLEAR

        if conversation.trigger_state == TriggerState.SUGGESTIONS_REQUESTED:
            return TriggerAction.COALESCE

        conversation.trigger_state = TriggerState.SUGGESTIONS_REQUESTED
        logger.debug("Incoming message in '%s'; requesting replies", conversation.contact_name)
        return TriggerAction.REQUEST

    # ------------------------------------------------------------------
    # Draft axis
    # ------------------------------------------------------------------

    def is_significant_edit(self, draft: str, previous: str) -> bool:
        if len(draft) < self.min_draft_length:
            return False
        if not previous.strip():
            return True
        growth = len(draft) - common_prefix_length(draft, previous)
        return growth >= self.min_draft_growth

    def evaluate_draft(self, conversation: Conversation, draft: str) -> DraftDecision:
        """Decide whether a draft warrants a new improvement request."""
        text = draft.strip()
        if len(text) < self.min_draft_length or is_placeholder(text):
            conversation.improved_suggestions.clear()
            return DraftDecision(fire=False, reason="empty or too short")

        if not self.is_significant_edit(text, conversation.last_improved_draft):
            return DraftDecision(fire=False, draft=text, reason="insignificant edit")

        conversation.last_improved_draft = text
        conversation.trigger_state = TriggerState.IMPROVEMENT_REQUESTED
        return DraftDecision(fire=True, draft=text)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def on_result(self, conversation: Conversation, kind: SuggestionKind, ok: bool, still_valid: bool = True):
        """
        Apply the outcome of a finished request.
        Failures and stale reply results return the affected state to NONE so
        a later append or retry can fire again.
        """
        expected = (
            TriggerState.SUGGESTIONS_REQUESTED
            if kind == SuggestionKind.REPLY
            else TriggerState.IMPROVEMENT_REQUESTED
        )
        if kind == SuggestionKind.IMPROVEMENT:
            if conversation.trigger_state == expected:
                conversation.trigger_state = TriggerState.NONE
            return

        if not ok or not still_valid:
            if conversation.trigger_state == expected:
                conversation.trigger_state = TriggerState.NONE
