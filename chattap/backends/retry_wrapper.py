"""
Retry wrapper for backends with exponential backoff.

Wraps any backend to add retry logic for transient errors:
- 429: Rate limited
- 5xx: Server errors
- 0: transport failure (timeout, connection refused)

Non-retried errors (permanent):
- 401, 403: Auth/permission errors
- 400, 404: Bad request / unknown model
"""

from __future__ import annotations

import asyncio
import logging

from chattap.backends.base import SuggestionBackend, BackendResponse

logger = logging.getLogger(__name__)


class RetryableBackendWrapper:
    """
    Wraps any backend with exponential backoff retry logic.
    Exposes the same complete()/health_check() interface.
    """

    def __init__(
        self,
        backend: SuggestionBackend,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.name = backend.name
        self.url = backend.url
        self.model = backend.model

    def _is_retryable(self, status_code: int) -> bool:
        return status_code in (0, 429, 500, 502, 503, 504)

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def complete(self, prompt: str, temperature: float = 0.7) -> BackendResponse:
        """Complete with retry on transient errors."""
        response = BackendResponse(ok=False, backend_name=self.name, error="not attempted")

        for attempt in range(self.max_retries + 1):
            response = await self.backend.complete(prompt, temperature=temperature)

            if response.ok:
                return response

            # Transport failures come back without a status code
            status = response.status_code if response.status_code >= 400 else 0
            if not self._is_retryable(status):
                logger.debug(
                    "Backend '%s' returned non-retryable %d: %s",
                    self.name,
                    response.status_code,
                    response.error,
                )
                return response

            if attempt < self.max_retries:
                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' transient failure (%s), retry in %.1fs (%d/%d)",
                    self.name,
                    response.error,
                    backoff,
                    attempt + 1,
                    self.max_retries,
                )
                await asyncio.sleep(backoff)
                continue

            logger.error(
                "Backend '%s' exhausted retries (last: %s)",
                self.name,
                response.error,
            )
        return response

    async def health_check(self) -> bool:
        return await self.backend.health_check()
