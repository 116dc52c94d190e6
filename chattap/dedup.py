"""Exact-text duplicate filter over a conversation's bounded history."""

from chattap.models import Conversation


class Deduplicator:
    """
    A text is a duplicate if it is already in the history window.
    Exact match only; similar-but-distinct messages must stay separate.
    """

    def is_duplicate(self, text: str, conversation: Conversation) -> bool:
        return any(m.text == text for m in conversation.history)
