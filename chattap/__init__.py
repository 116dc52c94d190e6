"""chattap: watch a chat screen, keep the conversation, suggest the reply."""

__version__ = "0.3.0"
