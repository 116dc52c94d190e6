"""
Exceptions raised inside chattap.

None of these are fatal to the host. Rejected and duplicate observations are
reported as ObservationOutcome values instead of exceptions.
"""


class ChatTapError(Exception):
    """Base class for chattap errors."""


class SuggestionServiceError(ChatTapError):
    """The AI service failed or returned something we could not parse."""


class SyncError(ChatTapError):
    """A call to the persistence backend failed."""

    def __init__(self, message: str, status_code: int = 0):
        super().__init__(message)
        self.status_code = status_code
