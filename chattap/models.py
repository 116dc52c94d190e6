"""
Data models for the observation pipeline.
These define the shape of data flowing from the chat screen to the store.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class Signal(str, enum.Enum):
    """Weak signals that point to an outgoing message."""
    CHECKMARK = "checkmark"
    RIGHT_ALIGNED = "rightAligned"
    BACKGROUND_HINT = "backgroundHint"
    STATUS_KEYWORD = "statusKeyword"


class TriggerState(str, enum.Enum):
    NONE = "none"
    SUGGESTIONS_REQUESTED = "suggestions_requested"
    IMPROVEMENT_REQUESTED = "improvement_requested"


class ObservationOutcome(str, enum.Enum):
    """What happened to a single observation in the pipeline."""
    APPENDED = "appended"
    REJECTED = "rejected"        # blank, too short, timestamp or status label
    DUPLICATE = "duplicate"
    IGNORED = "ignored"          # chat not accepted for capture


@dataclass
class Observation:
    """A raw text sighting on the chat screen."""
    text: str
    bounds_left: int = 0
    bounds_right: int = 0
    bounds_top: int = 0
    bounds_bottom: int = 0
    has_checkmark_glyph: bool = False
    content_description: str = ""
    screen_width: int = 1080
    display_timestamp: str = ""    # time label found next to the bubble, if any
    background_hint: bool = False  # set by sources that can see bubble colour

    @classmethod
    def from_dict(cls, data: dict) -> "Observation":
        """Build from a JSON payload (camelCase or snake_case keys)."""
        def pick(snake: str, camel: str, default):
            if snake in data:
                return data[snake]
            return data.get(camel, default)

        return cls(
            text=str(pick("text", "text", "") or ""),
            bounds_left=int(pick("bounds_left", "boundsLeft", 0)),
            bounds_right=int(pick("bounds_right", "boundsRight", 0)),
            bounds_top=int(pick("bounds_top", "boundsTop", 0)),
            bounds_bottom=int(pick("bounds_bottom", "boundsBottom", 0)),
            has_checkmark_glyph=bool(pick("has_checkmark_glyph", "hasCheckmarkGlyph", False)),
            content_description=str(pick("content_description", "contentDescription", "") or ""),
            screen_width=int(pick("screen_width", "screenWidth", 1080)),
            display_timestamp=str(pick("display_timestamp", "displayTimestamp", "") or ""),
            background_hint=bool(pick("background_hint", "backgroundHint", False)),
        )


@dataclass(frozen=True)
class ClassifiedMessage:
    """A message that passed classification. Immutable once created."""
    text: str
    is_incoming: bool
    confidence_signals: frozenset[Signal] = frozenset()
    timestamp_millis: int = 0
    display_timestamp: str = ""
    contact_name: str = ""

    def to_backend_format(self) -> dict:
        """Shape expected by POST /chats/messages."""
        return {
            "text": self.text,
            "timestamp": self.display_timestamp,
            "timestampMillis": self.timestamp_millis,
            "isIncoming": self.is_incoming,
        }

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "is_incoming": self.is_incoming,
            "signals": sorted(s.value for s in self.confidence_signals),
            "timestamp_millis": self.timestamp_millis,
            "display_timestamp": self.display_timestamp,
            "contact_name": self.contact_name,
        }


@dataclass
class Conversation:
    """Bounded, ordered history and trigger bookkeeping for one contact."""
    contact_name: str
    epoch: int = 0
    history: list[ClassifiedMessage] = field(default_factory=list)
    trigger_state: TriggerState = TriggerState.NONE
    last_request_timestamp: int = 0   # monotonic ms of the last reply dispatch
    suggested_replies: list[str] = field(default_factory=list)
    improved_suggestions: list[str] = field(default_factory=list)
    last_improved_draft: str = ""
    unsynced: list[ClassifiedMessage] = field(default_factory=list)

    @property
    def last_message(self) -> ClassifiedMessage | None:
        return self.history[-1] if self.history else None

    @property
    def awaiting_reply(self) -> bool:
        """True while the other party spoke last."""
        last = self.last_message
        return last is not None and last.is_incoming

    def as_transcript(self) -> str:
        """Render the history as the plain conversation text sent to the AI."""
        parts = [f"CHAT HISTORY WITH: {self.contact_name}", ""]
        for msg in self.history:
            sender = self.contact_name if msg.is_incoming else "YOU"
            parts.append(f"({sender} {msg.display_timestamp}) {msg.text}")
            parts.append("")
        return "\n".join(parts)

    def to_dict(self) -> dict:
        return {
            "contact_name": self.contact_name,
            "epoch": self.epoch,
            "trigger_state": self.trigger_state.value,
            "last_request_timestamp": self.last_request_timestamp,
            "history": [m.to_dict() for m in self.history],
            "suggested_replies": list(self.suggested_replies),
            "improved_suggestions": list(self.improved_suggestions),
            "unsynced": len(self.unsynced),
        }
