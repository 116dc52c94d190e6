"""
Gemini backend: Google's generateContent REST endpoint.

The key goes in the query string, the prompt in a single text part.
"""

from __future__ import annotations

import logging
import time

import httpx

from chattap.backends.base import SuggestionBackend, BackendResponse

logger = logging.getLogger(__name__)


class GeminiBackend(SuggestionBackend):
    """Backend for the Gemini API (generativelanguage.googleapis.com)."""

    def __init__(
        self,
        name: str,
        url: str = "https://generativelanguage.googleapis.com",
        model: str = "gemini-2.0-flash-lite",
        timeout: int = 30,
        api_key: str = "",
    ):
        super().__init__(name, url, model, timeout, api_key)

    @staticmethod
    def _extract_text(data: dict) -> str:
        """Join the text parts of the first candidate."""
        candidates = data.get("candidates", [])
        if not candidates:
            return ""
        parts = candidates[0].get("content", {}).get("parts", [])
        return "".join(p.get("text", "") for p in parts)

    async def complete(self, prompt: str, temperature: float = 0.7) -> BackendResponse:
        if not self.api_key:
            return BackendResponse(
                ok=False,
                status_code=401,
                backend_name=self.name,
                error="No Gemini API key configured",
            )

        t0 = time.monotonic()
        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": temperature},
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1beta/models/{self.model}:generateContent",
                    params={"key": self.api_key},
                    json=body,
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                data = resp.json()
                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    text=self._extract_text(data).strip(),
                    data=data,
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Gemini backend '%s' timed out after %.0fms", self.name, latency)
            return BackendResponse(
                ok=False, backend_name=self.name, latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Gemini backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False, backend_name=self.name, latency_ms=latency,
                error=str(e),
            )

    async def health_check(self) -> bool:
        if not self.api_key:
            return False
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(
                    f"{self.url}/v1beta/models/{self.model}",
                    params={"key": self.api_key},
                )
                return resp.status_code == 200
        except Exception:
            return False
