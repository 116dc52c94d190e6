"""
ChatEngine: wires the observation pipeline together.

    observations ──▶ classifier ──▶ store (dedup, window) ──▶ trigger policy
                                        │                          │
                                        ▼                          ▼
                                  message syncer         suggestion coordinator ──▶ on_result

Everything runs on one asyncio loop. observe() is synchronous and must be
called on that loop; other threads go through submit_threadsafe(). Backend
calls (AI, persistence) run as tasks and complete back on the loop.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Callable, Iterable

from chattap.backends import make_backend
from chattap.classifier import MessageClassifier
from chattap.coordinator import SuggestionRequestCoordinator, SuggestionResult
from chattap.errors import ChatTapError, SyncError
from chattap.models import ClassifiedMessage, Conversation, Observation, ObservationOutcome
from chattap.store import ConversationStore
from chattap.sync import ChatBackendClient, MessageSyncer
from chattap.triggers import TriggerAction, TriggerPolicy
from chattap.wiretap import WireLog

logger = logging.getLogger(__name__)


class ChatState(str, enum.Enum):
    """Capture-terms state of a chat."""
    UNKNOWN = "unknown"
    CHECKING = "checking"
    NOT_ACCEPTED = "not_accepted"
    ACCEPTED = "accepted"


class ChatEngine:
    def __init__(
        self,
        backend,
        classifier: MessageClassifier | None = None,
        policy: TriggerPolicy | None = None,
        history_limit: int = 30,
        spacing_ms: int = 3000,
        fallback_reply: str = "I'll get back to you soon.",
        persona: str = "",
        client: ChatBackendClient | None = None,
        sync_debounce_ms: int = 5000,
        acceptance_required: bool = False,
        load_on_switch: bool = True,
        wire: WireLog | None = None,
        on_result: Callable[[SuggestionResult], None] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.classifier = classifier or MessageClassifier()
        self.policy = policy or TriggerPolicy()
        self.client = client
        self.acceptance_required = acceptance_required
        self.load_on_switch = load_on_switch
        self.wire = wire
        self.on_result = on_result

        self.store = ConversationStore(history_limit=history_limit, on_flush=self._flush)
        self.syncer = MessageSyncer(client, self.store, sync_debounce_ms) if client else None
        self.coordinator = SuggestionRequestCoordinator(
            backend,
            self.store,
            self.policy,
            spacing_ms=spacing_ms,
            fallback_reply=fallback_reply,
            persona=persona,
            on_result=self._deliver,
            clock=clock,
        )

        self.draft = ""
        self._chat_states: dict[str, ChatState] = {}
        self._loop: asyncio.AbstractEventLoop | None = None
        self._tasks: set[asyncio.Task] = set()

    @classmethod
    def from_config(
        cls,
        cfg: dict,
        backend=None,
        client: ChatBackendClient | None = None,
        on_result: Callable[[SuggestionResult], None] | None = None,
    ) -> "ChatEngine":
        """Build an engine from the config dict. Explicit collaborators win over config."""
        s_cfg = cfg.get("suggestions", {})
        sync_cfg = cfg.get("sync", {})
        w_cfg = cfg.get("wiretap", {})

        if backend is None:
            backend = make_backend(s_cfg.get("backend", {}), retry=s_cfg.get("retry"))
        if client is None and sync_cfg.get("enabled", False):
            client = ChatBackendClient.from_config(cfg)

        wire = None
        if w_cfg.get("enabled", False):
            wire = WireLog(w_cfg.get("path", "./data/wire.jsonl"))

        return cls(
            backend,
            classifier=MessageClassifier.from_config(cfg),
            policy=TriggerPolicy.from_config(cfg),
            history_limit=int(cfg.get("conversation", {}).get("history_limit", 30)),
            spacing_ms=int(s_cfg.get("spacing_ms", 3000)),
            fallback_reply=s_cfg.get("fallback_reply", "I'll get back to you soon."),
            persona=s_cfg.get("persona", "") or "",
            client=client,
            sync_debounce_ms=int(sync_cfg.get("debounce_ms", 5000)),
            acceptance_required=bool(cfg.get("acceptance", {}).get("required", False)),
            load_on_switch=bool(sync_cfg.get("load_on_switch", True)),
            wire=wire,
            on_result=on_result,
        )

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def conversation(self) -> Conversation | None:
        return self.store.active

    @property
    def suggested_replies(self) -> list[str]:
        conv = self.store.active
        if conv is None:
            return []
        with self.store.lock:
            return list(conv.suggested_replies)

    @property
    def improved_suggestions(self) -> list[str]:
        conv = self.store.active
        if conv is None:
            return []
        with self.store.lock:
            return list(conv.improved_suggestions)

    @property
    def requesting_replies(self) -> bool:
        return self.coordinator.replies_pending

    @property
    def improving_draft(self) -> bool:
        return self.coordinator.improvement_in_flight

    def chat_state(self, contact_name: str) -> ChatState:
        if not self.acceptance_required:
            return ChatState.ACCEPTED
        return self._chat_states.get(contact_name, ChatState.UNKNOWN)

    def transcript(self) -> str:
        conv = self.store.active
        if conv is None:
            return ""
        with self.store.lock:
            return conv.as_transcript()

    def status(self) -> dict:
        conv = self.store.active
        with self.store.lock:
            data = conv.to_dict() if conv else None
        return {
            "conversation": data,
            "chat_state": self.chat_state(conv.contact_name).value if conv else None,
            "draft": self.draft,
            "requesting_replies": self.requesting_replies,
            "improving_draft": self.improving_draft,
        }

    # ------------------------------------------------------------------
    # Observation pipeline
    # ------------------------------------------------------------------

    def bind_loop(self, loop: asyncio.AbstractEventLoop | None = None):
        """Pin the engine to the loop that submit_threadsafe() targets."""
        self._loop = loop or asyncio.get_running_loop()

    def submit_threadsafe(self, contact_name: str, observations: Iterable[Observation]):
        """Hand observations over from another thread (e.g. a UI event thread)."""
        if self._loop is None:
            raise ChatTapError("Engine is not bound to an event loop")
        self._loop.call_soon_threadsafe(self.observe, contact_name, list(observations))

    def observe(self, contact_name: str, observations: Iterable[Observation]) -> list[ObservationOutcome]:
        """
        Run a batch of observations from the chat with `contact_name`.
        Returns one outcome per observation, in order.
        """
        observations = list(observations)
        conv = self._switch_to(contact_name)

        if self.chat_state(contact_name) != ChatState.ACCEPTED:
            logger.debug("Chat '%s' not accepted for capture; ignoring %d observations",
                         contact_name, len(observations))
            return [ObservationOutcome.IGNORED] * len(observations)

        outcomes = []
        appended = 0
        action = TriggerAction.NONE
        for obs in observations:
            msg = self.classifier.classify(obs, contact_name)
            if msg is None:
                outcomes.append(ObservationOutcome.REJECTED)
                continue
            if not self.store.append(conv, msg):
                outcomes.append(ObservationOutcome.DUPLICATE)
                continue
            outcomes.append(ObservationOutcome.APPENDED)
            appended += 1
            if self.wire:
                self.wire.log_message(contact_name, msg.text, msg.is_incoming, msg.confidence_signals)
            # The policy sees every append; the coordinator only the batch's final decision
            with self.store.lock:
                action = self.policy.evaluate(conv)

        if appended:
            logger.info("Captured %d new messages from '%s'", appended, contact_name)
            self._act(conv, action)
            if self.syncer:
                self.syncer.schedule(conv)
        return outcomes

    def _evaluate(self, conv: Conversation) -> asyncio.Future | None:
        with self.store.lock:
            action = self.policy.evaluate(conv)
        return self._act(conv, action)

    def _act(self, conv: Conversation, action: TriggerAction) -> asyncio.Future | None:
        future = None
        if action == TriggerAction.CLEAR:
            self.coordinator.cancel_replies(conv)
        elif action in (TriggerAction.REQUEST, TriggerAction.COALESCE):
            future = self.coordinator.request_reply_suggestions(conv)

        if self.wire and action != TriggerAction.NONE:
            self.wire.log_trigger(conv.contact_name, action.value)
        return future

    def _switch_to(self, contact_name: str) -> Conversation:
        current = self.store.active
        if current is not None and current.contact_name == contact_name:
            return current

        self.coordinator.invalidate()
        if self.syncer:
            self.syncer.cancel()
        self.draft = ""
        conv = self.store.get_or_create(contact_name)
        self._spawn(self._prepare_chat(conv))
        return conv

    async def _prepare_chat(self, conv: Conversation):
        """Resolve the acceptance state, then seed history from the backend."""
        contact = conv.contact_name
        epoch = conv.epoch

        if self.acceptance_required and self._chat_states.get(contact, ChatState.UNKNOWN) == ChatState.UNKNOWN:
            if self.client is None:
                return
            self._chat_states[contact] = ChatState.CHECKING
            try:
                accepted = await self.client.check_acceptance(contact)
            except SyncError as e:
                logger.warning("Could not check acceptance for '%s': %s", contact, e)
                self._chat_states[contact] = ChatState.UNKNOWN
                return
            self._chat_states[contact] = ChatState.ACCEPTED if accepted else ChatState.NOT_ACCEPTED
            logger.info("Chat '%s' acceptance: %s", contact, self._chat_states[contact].value)

        if self.chat_state(contact) == ChatState.ACCEPTED:
            await self._load_history(conv, epoch)

    async def _load_history(self, conv: Conversation, epoch: int):
        if self.client is None or not self.load_on_switch:
            return
        if not self.store.still_valid(conv, epoch) or conv.history:
            return
        try:
            messages = await self.client.get_messages(conv.contact_name, limit=self.store.history_limit)
        except SyncError as e:
            logger.warning("Could not load history for '%s': %s", conv.contact_name, e)
            return
        if not self.store.still_valid(conv, epoch):
            return
        added = self.store.load_history(conv, messages)
        logger.info("Loaded %d stored messages for '%s'", added, conv.contact_name)

    def _flush(self, contact_name: str, batch: list[ClassifiedMessage]):
        if self.syncer:
            self.syncer.flush(contact_name, batch)

    def _deliver(self, result: SuggestionResult):
        if self.wire:
            self.wire.log_suggestions(
                result.contact_name,
                result.kind.value,
                result.suggestions,
                error=result.error,
                fallback=result.fallback,
            )
        if self.on_result:
            self.on_result(result)

    def _spawn(self, coro):
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    def update_draft(self, text: str):
        """Track what the user is typing; nothing is requested."""
        self.draft = text

    def improve_draft(self, draft: str | None = None) -> asyncio.Future | None:
        """Explicitly ask for improved versions of the draft."""
        if draft is not None:
            self.draft = draft
        conv = self.store.active
        if conv is None:
            return None
        return self.coordinator.request_improvement(conv, self.draft)

    def refresh_suggestions(self) -> asyncio.Future | None:
        """Explicit retry of reply suggestions for the current chat."""
        conv = self.store.active
        if conv is None or not conv.awaiting_reply:
            return None
        return self._evaluate(conv)

    async def accept_chat(self, contact_name: str) -> ChatState:
        """Record the user's acceptance of capture terms for a chat."""
        if self.client is not None:
            await self.client.accept_chat(contact_name)
        self._chat_states[contact_name] = ChatState.ACCEPTED
        logger.info("Chat '%s' accepted for capture", contact_name)

        conv = self.store.active
        if conv is not None and conv.contact_name == contact_name:
            await self._load_history(conv, conv.epoch)
        return ChatState.ACCEPTED

    def reset(self):
        """Clear the current chat's history and suggestions."""
        conv = self.store.active
        if conv is None:
            return
        self.coordinator.invalidate()
        if self.syncer:
            self.syncer.cancel()
        self.store.reset(conv)
        self.draft = ""

    def logout(self):
        """Drop all state and forget the backend token."""
        self.coordinator.invalidate()
        if self.syncer:
            self.syncer.cancel()
        self.store.reset_all()
        self._chat_states.clear()
        self.draft = ""
        if self.client is not None:
            self.client.token = ""
        logger.info("Logged out")

    async def drain(self, timeout: float | None = None):
        """Wait for background work: chat preparation, AI requests, syncs."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.coordinator.drain(timeout)
        if self.syncer:
            await self.syncer.drain()

    def close(self):
        self.coordinator.invalidate()
        if self.syncer:
            self.syncer.cancel()
        if self.wire:
            self.wire.close()
