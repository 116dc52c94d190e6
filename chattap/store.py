"""
Conversation store: the single owner of conversation state.

Only one conversation is active at a time, matching a single foreground chat.
Switching contact flushes the outgoing conversation's unsynced messages and
starts a fresh one. Each switch or reset bumps the epoch, and anything
scheduled against an older epoch (timers, late AI results) is ignored.

All mutation happens under a short lock; no I/O is done while holding it.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from chattap.dedup import Deduplicator
from chattap.models import ClassifiedMessage, Conversation, TriggerState

logger = logging.getLogger(__name__)

FlushCallback = Callable[[str, list[ClassifiedMessage]], None]


class ConversationStore:
    """Thread-safe holder of the active conversation."""

    def __init__(
        self,
        history_limit: int = 30,
        deduplicator: Deduplicator | None = None,
        on_flush: FlushCallback | None = None,
    ):
        self.history_limit = history_limit
        self.dedup = deduplicator or Deduplicator()
        self.on_flush = on_flush
        self._active: Conversation | None = None
        self._epoch = 0
        self._lock = threading.RLock()

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def active(self) -> Conversation | None:
        with self._lock:
            return self._active

    @property
    def epoch(self) -> int:
        return self._epoch

    def is_current(self, conversation: Conversation) -> bool:
        """True if the conversation is still the active one at its epoch."""
        with self._lock:
            return (
                self._active is conversation
                and conversation.epoch == self._epoch
            )

    def still_valid(self, conversation: Conversation, epoch: int) -> bool:
        """True if work tagged with `epoch` may still touch the conversation."""
        with self._lock:
            return self._active is conversation and epoch == self._epoch

    def get_or_create(self, contact_name: str) -> Conversation:
        """Return the active conversation, switching if the contact changed."""
        flushed: tuple[str, list[ClassifiedMessage]] | None = None
        with self._lock:
            current = self._active
            if current is not None and current.contact_name == contact_name:
                return current

            if current is not None and current.unsynced:
                flushed = (current.contact_name, list(current.unsynced))
                current.unsynced.clear()

            self._epoch += 1
            self._active = Conversation(contact_name=contact_name, epoch=self._epoch)
            conversation = self._active

        logger.info(
            "Switched conversation %s -> %s (epoch %d)",
            current.contact_name if current else "<none>",
            contact_name,
            conversation.epoch,
        )
        if flushed and self.on_flush:
            try:
                self.on_flush(*flushed)
            except Exception as e:
                logger.warning("Flush of '%s' failed: %s", flushed[0], e)
        return conversation

    def append(self, conversation: Conversation, message: ClassifiedMessage) -> bool:
        """
        Append a message to the end of the history.
        Returns False for duplicates. Oldest entries are evicted past the limit.
        """
        with self._lock:
            if self.dedup.is_duplicate(message.text, conversation):
                logger.debug("Skipping duplicate message: %r", message.text[:40])
                return False
            conversation.history.append(message)
            overflow = len(conversation.history) - self.history_limit
            if overflow > 0:
                del conversation.history[:overflow]
            conversation.unsynced.append(message)
            return True

    def load_history(self, conversation: Conversation, messages: list[ClassifiedMessage]) -> int:
        """
        Seed history from the backend, oldest first. Loaded messages go in
        front of anything observed meanwhile and are not marked unsynced.
        """
        with self._lock:
            fresh: list[ClassifiedMessage] = []
            for msg in messages:
                if self.dedup.is_duplicate(msg.text, conversation):
                    continue
                if any(m.text == msg.text for m in fresh):
                    continue
                fresh.append(msg)
            conversation.history[:0] = fresh
            added = len(fresh)
            overflow = len(conversation.history) - self.history_limit
            if overflow > 0:
                del conversation.history[:overflow]
            return added

    def take_unsynced(self, conversation: Conversation) -> list[ClassifiedMessage]:
        with self._lock:
            batch = list(conversation.unsynced)
            conversation.unsynced.clear()
            return batch

    def requeue_unsynced(self, conversation: Conversation, batch: list[ClassifiedMessage]):
        """Put a failed batch back in front of anything appended since."""
        with self._lock:
            seen = {m.text for m in conversation.unsynced}
            conversation.unsynced[:0] = [m for m in batch if m.text not in seen]

    def reset(self, conversation: Conversation):
        """Clear history and trigger state (manual chat reset)."""
        with self._lock:
            conversation.history.clear()
            conversation.unsynced.clear()
            conversation.suggested_replies.clear()
            conversation.improved_suggestions.clear()
            conversation.last_improved_draft = ""
            conversation.trigger_state = TriggerState.NONE
            conversation.last_request_timestamp = 0
            if self._active is conversation:
                self._epoch += 1
                conversation.epoch = self._epoch
        logger.info("Reset conversation '%s'", conversation.contact_name)

    def reset_all(self):
        """Drop everything (logout)."""
        with self._lock:
            self._active = None
            self._epoch += 1
        logger.info("Cleared all conversation state")
