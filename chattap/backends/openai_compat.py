"""
Generic OpenAI-compatible backend.

Supports any endpoint that speaks OpenAI API format:
- llama.cpp server
- vLLM
- Ollama
- hosted OpenAI-style APIs
"""

from __future__ import annotations

import logging
import time

import httpx

from chattap.backends.base import SuggestionBackend, BackendResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(SuggestionBackend):
    """Backend for any service implementing /v1/chat/completions."""

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def complete(self, prompt: str, temperature: float = 0.7) -> BackendResponse:
        t0 = time.monotonic()
        body = {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "stream": False,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
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
                choices = data.get("choices", [])
                text = choices[0].get("message", {}).get("content", "") if choices else ""
                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    text=text or "",
                    data=data,
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning(
                "OpenAI-compatible backend '%s' timed out after %.0fms",
                self.name,
                latency,
            )
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except Exception as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning(
                "OpenAI-compatible backend '%s' failed: %s", self.name, e
            )
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=str(e),
            )

    async def health_check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=5) as client:
                resp = await client.get(f"{self.url}/v1/models", headers=self._headers())
                return resp.status_code == 200
        except Exception:
            return False
