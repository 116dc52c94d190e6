"""
Base backend abstraction for the AI suggestion service.
All backends implement this interface so the coordinator can treat them uniformly.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Standardized response from any text-completion backend."""
    ok: bool
    status_code: int = 200
    text: str = ""
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""


class SuggestionBackend(abc.ABC):
    """
    Abstract base for text-completion backends.
    complete() never raises for transport problems; it returns ok=False.
    """

    def __init__(self, name: str, url: str, model: str = "", timeout: int = 30, api_key: str = ""):
        self.name = name
        self.url = url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.api_key = api_key

    @abc.abstractmethod
    async def complete(self, prompt: str, temperature: float = 0.7) -> BackendResponse:
        """Send a single prompt and return the completion text."""
        ...

    @abc.abstractmethod
    async def health_check(self) -> bool:
        """Check if this backend is reachable and responsive."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r} model={self.model!r}>"
