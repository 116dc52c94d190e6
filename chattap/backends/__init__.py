"""
AI suggestion backends.

Usage:
    from chattap.backends import make_backend
    backend = make_backend(cfg["suggestions"]["backend"], retry=cfg["suggestions"].get("retry"))

Adding a new backend:
    1. Create chattap/backends/<name>.py implementing SuggestionBackend.
    2. Add an entry to PROVIDERS below.
    3. Set  suggestions.backend.provider: <name>  in config.yaml.
"""

from __future__ import annotations

import logging

from chattap.backends.base import BackendResponse, SuggestionBackend
from chattap.backends.gemini import GeminiBackend
from chattap.backends.openai_compat import OpenAICompatibleBackend
from chattap.backends.retry_wrapper import RetryableBackendWrapper

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[SuggestionBackend]] = {
    "gemini": GeminiBackend,
    "openai_compat": OpenAICompatibleBackend,
}


def make_backend(backend_cfg: dict, retry: dict | None = None):
    """
    Instantiate a backend from its config block, wrapped with retries.

    Raises:
        ValueError: If the provider is unknown or no url is configured.
    """
    provider = backend_cfg.get("provider", "gemini")
    cls = PROVIDERS.get(provider)
    if cls is None:
        available = ", ".join(PROVIDERS.keys())
        raise ValueError(f"Unknown suggestion backend: '{provider}'. Available: {available}")

    url = backend_cfg.get("url", "")
    if not url:
        raise ValueError(f"Suggestion backend '{provider}' has no url")

    backend = cls(
        name=backend_cfg.get("name", provider),
        url=url,
        model=backend_cfg.get("model", ""),
        timeout=backend_cfg.get("timeout", 30),
        api_key=backend_cfg.get("api_key", ""),
    )
    retry = retry or {}
    wrapped = RetryableBackendWrapper(
        backend,
        max_retries=retry.get("max_retries", 2),
        backoff_base=retry.get("backoff_base", 1.5),
        backoff_max=retry.get("backoff_max", 10.0),
    )
    logger.info("Suggestion backend: %r", backend)
    return wrapped


__all__ = [
    "BackendResponse",
    "SuggestionBackend",
    "GeminiBackend",
    "OpenAICompatibleBackend",
    "RetryableBackendWrapper",
    "make_backend",
]
