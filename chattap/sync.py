"""
Persistence backend client and message syncer.

The backend is a small REST service (bearer-token auth) that records which
chats the user accepted capture terms for and stores their messages:

    GET  /chats/accept/{chatName}         -> {success, accepted}
    POST /chats/accept {chatName}         -> {success, data: {chatName, acceptedAt}}
    POST /chats/messages {chatName, messages: [...]}  -> {success, savedCount}
    GET  /chats/messages/{chatName}?limit=N           -> {success, data: [...]}
    GET  /chats/accepted                  -> {success, data: [{chatName, ...}]}

The backend drops messages it already has, so resending a batch is harmless.
The syncer relies on that: a failed batch is requeued and sent again later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from urllib.parse import quote

import httpx

from chattap.errors import SyncError
from chattap.models import ClassifiedMessage, Conversation
from chattap.store import ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class AcceptedChat:
    chat_name: str
    accepted_at: str = ""
    last_updated: str = ""
    message_count: int = 0


class ChatBackendClient:
    """Thin async client for the persistence REST contract."""

    def __init__(self, url: str, token: str = "", timeout: int = 10):
        self.url = url.rstrip("/")
        self.token = token
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: dict) -> "ChatBackendClient":
        s_cfg = cfg.get("sync", {})
        return cls(
            url=s_cfg.get("url", "http://localhost:5000/api"),
            token=s_cfg.get("token", ""),
            timeout=s_cfg.get("timeout", 10),
        )

    def _headers(self) -> dict:
        if not self.token:
            raise SyncError("Not logged in: no backend token configured", status_code=401)
        return {"Authorization": f"Bearer {self.token}"}

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        headers = self._headers()
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.request(method, f"{self.url}{path}", headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise SyncError(f"Backend timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise SyncError(f"Backend unreachable: {e}") from e

        if resp.status_code >= 400:
            try:
                message = resp.json().get("message", "")
            except ValueError:
                message = resp.text[:200]
            raise SyncError(f"HTTP {resp.status_code}: {message}", status_code=resp.status_code)

        try:
            data = resp.json()
        except ValueError as e:
            raise SyncError("Backend returned invalid JSON") from e
        if not data.get("success", False):
            raise SyncError(data.get("message", "Backend reported failure"), status_code=resp.status_code)
        return data

    @staticmethod
    def _chat_path(chat_name: str) -> str:
        return quote(chat_name, safe="")

    async def check_acceptance(self, chat_name: str) -> bool:
        data = await self._request("GET", f"/chats/accept/{self._chat_path(chat_name)}")
        return bool(data.get("accepted", False))

    async def accept_chat(self, chat_name: str) -> str:
        """Record acceptance; returns the acceptedAt timestamp."""
        data = await self._request("POST", "/chats/accept", json={"chatName": chat_name})
        return str(data.get("data", {}).get("acceptedAt", ""))

    async def store_messages(self, chat_name: str, messages: list[ClassifiedMessage]) -> int:
        """Send a batch; returns how many the backend saved as new."""
        payload = {
            "chatName": chat_name,
            "messages": [m.to_backend_format() for m in messages],
        }
        data = await self._request("POST", "/chats/messages", json=payload)
        return int(data.get("savedCount", 0))

    async def get_messages(self, chat_name: str, limit: int | None = None) -> list[ClassifiedMessage]:
        params = {"limit": limit} if limit else None
        data = await self._request("GET", f"/chats/messages/{self._chat_path(chat_name)}", params=params)
        messages = []
        for item in data.get("data", []):
            text = item.get("text", "")
            if not text:
                continue
            messages.append(ClassifiedMessage(
                text=text,
                is_incoming=bool(item.get("isIncoming", False)),
                timestamp_millis=int(item.get("timestampMillis", 0) or 0),
                display_timestamp=str(item.get("timestamp", "")),
                contact_name=item.get("contactName", chat_name),
            ))
        return messages

    async def accepted_chats(self) -> list[AcceptedChat]:
        data = await self._request("GET", "/chats/accepted")
        return [
            AcceptedChat(
                chat_name=item.get("chatName", ""),
                accepted_at=str(item.get("acceptedAt", "")),
                last_updated=str(item.get("lastUpdated", "")),
                message_count=int(item.get("messageCount", 0) or 0),
            )
            for item in data.get("data", [])
        ]


class MessageSyncer:
    """
    Pushes newly appended messages to the backend, at most once per
    `debounce_ms`. A sync attempted inside the window is deferred, not lost:
    a timer sends it when the window closes. Failures requeue the batch.
    """

    def __init__(self, client: ChatBackendClient, store: ConversationStore, debounce_ms: int = 5000):
        self.client = client
        self.store = store
        self.debounce_ms = debounce_ms
        self._last_sync = 0.0
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self.synced_count = 0

    def schedule(self, conversation: Conversation):
        """Sync now if the debounce window allows, otherwise when it closes."""
        if not conversation.unsynced:
            return
        loop = asyncio.get_running_loop()
        elapsed_ms = (time.monotonic() - self._last_sync) * 1000
        if self._last_sync and elapsed_ms < self.debounce_ms:
            if self._timer is None:
                delay = (self.debounce_ms - elapsed_ms) / 1000
                self._timer = loop.call_later(delay, self._fire, conversation, conversation.epoch)
            return
        self._start(conversation)

    def _fire(self, conversation: Conversation, epoch: int):
        self._timer = None
        if not self.store.still_valid(conversation, epoch):
            # The switch already flushed this conversation
            return
        self._start(conversation)

    def _start(self, conversation: Conversation):
        batch = self.store.take_unsynced(conversation)
        if not batch:
            return
        self._last_sync = time.monotonic()
        task = asyncio.get_running_loop().create_task(self._send(conversation, conversation.epoch, batch))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _send(self, conversation: Conversation, epoch: int, batch: list[ClassifiedMessage]):
        try:
            saved = await self.client.store_messages(conversation.contact_name, batch)
            self.synced_count += saved
            logger.info("Synced %d messages for '%s' (%d new)", len(batch), conversation.contact_name, saved)
        except SyncError as e:
            if not self.store.still_valid(conversation, epoch):
                logger.warning("Sync for '%s' failed after a switch or reset; dropping %d messages: %s",
                               conversation.contact_name, len(batch), e)
                return
            logger.warning("Sync for '%s' failed, will retry: %s", conversation.contact_name, e)
            self.store.requeue_unsynced(conversation, batch)

    def flush(self, chat_name: str, batch: list[ClassifiedMessage]):
        """Send a batch for a conversation that is no longer active."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No event loop; dropping %d unsynced messages for '%s'", len(batch), chat_name)
            return

        async def _send_detached():
            try:
                await self.client.store_messages(chat_name, batch)
                logger.info("Flushed %d messages for '%s'", len(batch), chat_name)
            except SyncError as e:
                logger.warning("Flush for '%s' failed: %s", chat_name, e)

        task = loop.create_task(_send_detached())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def drain(self):
        """Wait for in-flight sync calls (used by tests and shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
