"""
Suggestion request coordinator.

Owns every call to the AI suggestion service for the active conversation:

  - at most one reply request and one improvement request outstanding
  - reply requests for the same conversation are spaced at least
    `spacing_ms` apart; an early trigger is scheduled for the remaining time
    rather than dropped, and further triggers are coalesced into it
  - a trigger that arrives while a request is in flight joins it; no
    second request goes out for the same window
  - before a reply result is shown, the last message must still be incoming
  - every timer and task is tagged with the conversation epoch; anything
    that completes against an older epoch is dropped, even if the host
    scheduler fires it after cancellation

Requests run as tasks on the event loop and complete back on it, so the
re-validation never races with observation processing.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from chattap.errors import SuggestionServiceError
from chattap.models import Conversation
from chattap.prompts import build_improvement_prompt, build_reply_prompt, parse_suggestions
from chattap.store import ConversationStore
from chattap.triggers import SuggestionKind, TriggerPolicy

logger = logging.getLogger(__name__)


@dataclass
class SuggestionResult:
    """Outcome of one request, handed to the UI collaborator."""
    kind: SuggestionKind
    contact_name: str
    suggestions: list[str] = field(default_factory=list)
    ok: bool = True
    delivered: bool = True     # False when discarded as stale
    fallback: bool = False
    error: str = ""

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "contact_name": self.contact_name,
            "suggestions": list(self.suggestions),
            "ok": self.ok,
            "delivered": self.delivered,
            "fallback": self.fallback,
            "error": self.error,
        }


class _Slot:
    """Bookkeeping for one trigger type."""

    __slots__ = ("future", "timer", "task", "epoch")

    def __init__(self):
        self.future: asyncio.Future | None = None
        self.timer: asyncio.TimerHandle | None = None
        self.task: asyncio.Task | None = None
        self.epoch = -1

    def pending(self, epoch: int) -> bool:
        return self.future is not None and not self.future.done() and self.epoch == epoch

    @property
    def in_flight(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def scheduled(self) -> bool:
        return self.timer is not None


ResultCallback = Callable[[SuggestionResult], None]


class SuggestionRequestCoordinator:
    """Issues, spaces, coalesces and validates AI suggestion requests."""

    def __init__(
        self,
        backend,
        store: ConversationStore,
        policy: TriggerPolicy,
        spacing_ms: int = 3000,
        fallback_reply: str = "I'll get back to you soon.",
        persona: str = "",
        on_result: ResultCallback | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.backend = backend
        self.store = store
        self.policy = policy
        self.spacing_ms = spacing_ms
        self.fallback_reply = fallback_reply
        self.persona = persona
        self.on_result = on_result
        self._clock = clock or (lambda: int(time.monotonic() * 1000))
        self._reply = _Slot()
        self._improve = _Slot()
        self.dispatch_count = 0

    @property
    def replies_in_flight(self) -> bool:
        return self._reply.in_flight

    @property
    def replies_pending(self) -> bool:
        return self._reply.future is not None and not self._reply.future.done()

    @property
    def improvement_in_flight(self) -> bool:
        return self._improve.in_flight

    # ------------------------------------------------------------------
    # Reply suggestions
    # ------------------------------------------------------------------

    def request_reply_suggestions(self, conversation: Conversation) -> asyncio.Future:
        """
        Ask for reply suggestions. Returns a future resolving to a
        SuggestionResult; repeated calls while one is outstanding share it.
        """
        loop = asyncio.get_running_loop()
        slot = self._reply
        epoch = conversation.epoch

        if slot.pending(epoch):
            logger.debug("Reply request already outstanding for '%s'; coalesced", conversation.contact_name)
            return slot.future

        self._abandon(slot, "superseded")
        slot.future = loop.create_future()
        slot.epoch = epoch

        last = conversation.last_request_timestamp
        elapsed = self._clock() - last
        if last > 0 and elapsed < self.spacing_ms:
            delay_ms = self.spacing_ms - elapsed
            logger.debug("Debouncing reply request for '%s'; sending in %dms", conversation.contact_name, delay_ms)
            slot.timer = loop.call_later(delay_ms / 1000, self._fire_reply, conversation, epoch)
        else:
            self._dispatch_reply(conversation, epoch)
        return slot.future

    def cancel_replies(self, conversation: Conversation):
        """Drop a scheduled reply request (the local user replied)."""
        slot = self._reply
        if slot.epoch != conversation.epoch or not slot.scheduled:
            return
        slot.timer.cancel()
        slot.timer = None
        self._finish(slot, SuggestionResult(
            kind=SuggestionKind.REPLY,
            contact_name=conversation.contact_name,
            ok=False,
            delivered=False,
            error="cancelled",
        ))

    def _fire_reply(self, conversation: Conversation, epoch: int):
        slot = self._reply
        slot.timer = None
        if slot.epoch != epoch or not self.store.still_valid(conversation, epoch):
            logger.debug("Dropping stale reply timer for '%s'", conversation.contact_name)
            self._finish(slot, SuggestionResult(
                kind=SuggestionKind.REPLY,
                contact_name=conversation.contact_name,
                ok=False,
                delivered=False,
                error="stale",
            ), epoch=epoch)
            return
        self._dispatch_reply(conversation, epoch)

    def _dispatch_reply(self, conversation: Conversation, epoch: int):
        with self.store.lock:
            conversation.last_request_timestamp = self._clock()
            prompt = build_reply_prompt(conversation.as_transcript(), self.persona)
            count = len(conversation.history)
        self.dispatch_count += 1
        logger.info("Requesting reply suggestions for '%s' (%d messages)", conversation.contact_name, count)
        self._reply.task = asyncio.get_running_loop().create_task(
            self._run(SuggestionKind.REPLY, conversation, epoch, prompt)
        )

    def _complete_reply(self, conversation: Conversation, epoch: int, replies: list[str], error: str):
        slot = self._reply
        if slot.epoch == epoch:
            slot.task = None
        ok = not error

        if slot.epoch != epoch or not self.store.still_valid(conversation, epoch):
            logger.debug("Discarding reply result for stale conversation '%s'", conversation.contact_name)
            self._finish(slot, SuggestionResult(
                kind=SuggestionKind.REPLY,
                contact_name=conversation.contact_name,
                suggestions=replies,
                ok=ok,
                delivered=False,
                error=error or "stale",
            ), epoch=epoch)
            return

        fallback = False
        with self.store.lock:
            still_incoming = conversation.awaiting_reply
            if ok and still_incoming:
                conversation.suggested_replies = list(replies)
                delivered = True
            elif not ok and still_incoming and self.fallback_reply:
                conversation.suggested_replies = [self.fallback_reply]
                delivered = fallback = True
            else:
                conversation.suggested_replies.clear()
                delivered = False
            self.policy.on_result(conversation, SuggestionKind.REPLY, ok, still_valid=still_incoming)

        if not still_incoming:
            logger.info("Last message in '%s' changed; discarding suggestions", conversation.contact_name)
        elif not ok:
            logger.warning("Reply suggestions for '%s' failed: %s", conversation.contact_name, error)

        self._finish(slot, SuggestionResult(
            kind=SuggestionKind.REPLY,
            contact_name=conversation.contact_name,
            suggestions=list(conversation.suggested_replies),
            ok=ok,
            delivered=delivered,
            fallback=fallback,
            error=error,
        ), epoch=epoch)

    # ------------------------------------------------------------------
    # Draft improvement
    # ------------------------------------------------------------------

    def request_improvement(self, conversation: Conversation, draft: str) -> asyncio.Future | None:
        """
        Ask for improved versions of the user's draft.
        Returns None if the draft does not warrant a request or one is in flight.
        """
        loop = asyncio.get_running_loop()
        slot = self._improve
        epoch = conversation.epoch

        if slot.pending(epoch):
            logger.debug("Improvement already in flight for '%s'; ignoring", conversation.contact_name)
            return None

        with self.store.lock:
            decision = self.policy.evaluate_draft(conversation, draft)
            if not decision.fire:
                logger.debug("Not improving draft: %s", decision.reason)
                return None
            prompt = build_improvement_prompt(decision.draft, conversation.as_transcript())

        self._abandon(slot, "superseded")
        slot.future = loop.create_future()
        slot.epoch = epoch
        self.dispatch_count += 1
        logger.info("Requesting draft improvement for '%s'", conversation.contact_name)
        slot.task = loop.create_task(self._run(SuggestionKind.IMPROVEMENT, conversation, epoch, prompt))
        return slot.future

    def _complete_improvement(self, conversation: Conversation, epoch: int, suggestions: list[str], error: str):
        slot = self._improve
        if slot.epoch == epoch:
            slot.task = None
        ok = not error

        if slot.epoch != epoch or not self.store.still_valid(conversation, epoch):
            self._finish(slot, SuggestionResult(
                kind=SuggestionKind.IMPROVEMENT,
                contact_name=conversation.contact_name,
                suggestions=suggestions,
                ok=ok,
                delivered=False,
                error=error or "stale",
            ), epoch=epoch)
            return

        with self.store.lock:
            if ok:
                conversation.improved_suggestions = list(suggestions)
            self.policy.on_result(conversation, SuggestionKind.IMPROVEMENT, ok)

        if not ok:
            logger.warning("Draft improvement for '%s' failed: %s", conversation.contact_name, error)
        self._finish(slot, SuggestionResult(
            kind=SuggestionKind.IMPROVEMENT,
            contact_name=conversation.contact_name,
            suggestions=list(suggestions) if ok else [],
            ok=ok,
            delivered=ok,
            error=error,
        ), epoch=epoch)

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    async def _run(self, kind: SuggestionKind, conversation: Conversation, epoch: int, prompt: str):
        suggestions: list[str] = []
        error = ""
        try:
            response = await self.backend.complete(prompt)
            if response.ok:
                suggestions = parse_suggestions(response.text)
            else:
                error = response.error or f"HTTP {response.status_code}"
        except SuggestionServiceError as e:
            error = str(e)
        except Exception as e:
            logger.exception("Suggestion backend raised")
            error = str(e) or e.__class__.__name__

        if kind == SuggestionKind.REPLY:
            self._complete_reply(conversation, epoch, suggestions, error)
        else:
            self._complete_improvement(conversation, epoch, suggestions, error)

    def _finish(self, slot: _Slot, result: SuggestionResult, epoch: int | None = None):
        if epoch is not None and slot.epoch != epoch:
            # Slot was reused by a newer request; this result belongs to no one.
            return
        future = slot.future
        if future is not None and not future.done():
            future.set_result(result)
        if self.on_result and result.delivered:
            try:
                self.on_result(result)
            except Exception as e:
                logger.warning("Suggestion result callback failed: %s", e)

    def _abandon(self, slot: _Slot, reason: str):
        """Cancel whatever the slot holds and resolve its future as undelivered."""
        if slot.timer is not None:
            slot.timer.cancel()
            slot.timer = None
        if slot.task is not None and not slot.task.done():
            slot.task.cancel()
        slot.task = None
        future = slot.future
        if future is not None and not future.done():
            future.set_result(SuggestionResult(
                kind=SuggestionKind.REPLY if slot is self._reply else SuggestionKind.IMPROVEMENT,
                contact_name="",
                ok=False,
                delivered=False,
                error=reason,
            ))

    def invalidate(self):
        """Forget everything outstanding (conversation switch, reset, logout)."""
        self._abandon(self._reply, "conversation changed")
        self._abandon(self._improve, "conversation changed")

    async def drain(self, timeout: float | None = None):
        """Wait until no request is scheduled or in flight."""
        async def _wait():
            while True:
                pending = [
                    s.future for s in (self._reply, self._improve)
                    if s.future is not None and not s.future.done()
                ]
                if not pending:
                    return
                await asyncio.gather(*pending)
                # Let completion callbacks run before re-checking
                await asyncio.sleep(0)

        await asyncio.wait_for(_wait(), timeout)
