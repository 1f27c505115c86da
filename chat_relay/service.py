"""Relay sessions: one chat turn streamed from the model server to the client.

A :class:`RelaySession` moves through
``INITIALIZING -> AWAITING_CONVERSATION -> STREAMING_UPSTREAM`` and ends in
``COMPLETED``, ``ABORTED`` or ``FAILED``. :meth:`RelaySession.open` performs
everything that can still be reported to the caller as a structured error
(validation, store writes, upstream connect). :meth:`RelaySession.stream`
then pipes text deltas to the client and, once the stream is over, hands the
accumulated reply to a background persistence task.

:class:`ChatRelayService` owns the collaborators shared by all sessions and is
the entry point used by the HTTP layer.
"""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, TypeVar

import requests

from .cancellation import CancellationToken
from .config import RelayConfig
from .errors import (
    NotFoundError,
    RelayError,
    StoreError,
    StreamCancelled,
    UpstreamStreamError,
    ValidationError,
)
from .llm_client import OllamaStreamClient, UpstreamStream
from .prompts import build_prompt
from .store import ConversationStore, InMemoryConversationStore, MessageRecord
from .titles import synthesize_title

logger = logging.getLogger(__name__)

# Marks an absent "model" field; an explicit null is rejected like any non-string.
DEFAULT_MODEL: Any = object()

T = TypeVar("T")


class RelayState(str, Enum):
    INITIALIZING = "initializing"
    AWAITING_CONVERSATION = "awaiting_conversation"
    STREAMING_UPSTREAM = "streaming_upstream"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.ABORTED, RelayState.FAILED})


class RelaySession:
    """Per-request orchestrator for a single chat turn. Never persisted."""

    def __init__(
        self,
        *,
        store: ConversationStore,
        client: OllamaStreamClient,
        config: RelayConfig,
        executor: ThreadPoolExecutor,
        owner_id: str,
        message: Any,
        model: Any = DEFAULT_MODEL,
        conversation_id: Any = None,
    ) -> None:
        self.store = store
        self.client = client
        self.config = config
        self._executor = executor
        self.owner_id = owner_id
        self._raw_message = message
        self._raw_model = model
        self._raw_conversation_id = conversation_id

        self.state = RelayState.INITIALIZING
        self.token = CancellationToken()
        self.message = ""
        self.model = ""
        self.conversation_id: Optional[str] = None
        self.created_conversation = False
        self.has_title = False
        self.user_message: Optional[MessageRecord] = None
        self.prompt: List[Dict[str, str]] = []
        self.persistence: Optional[Future] = None
        self._chunks: List[str] = []
        self._upstream: Optional[UpstreamStream] = None

    @property
    def accumulated(self) -> str:
        return "".join(self._chunks)

    def cancel(self, reason: str = "client") -> None:
        """Propagate a client abort (or any other stop request) to the upstream stream."""
        if self.token.cancel(reason):
            logger.info("Relay for conversation %s cancelled (%s)", self.conversation_id, reason)

    def abandon(self) -> None:
        """Drop a session whose stream will never be consumed (client left before the response)."""
        self.cancel("client")
        if self._upstream is not None:
            self._upstream.close()
        if self.state not in TERMINAL_STATES:
            self.state = RelayState.ABORTED

    # ------------------------------------------------------------------ open
    def open(self) -> "RelaySession":
        """Validate, resolve the conversation, persist the user turn and connect upstream."""
        try:
            self._validate()
            self.state = RelayState.AWAITING_CONVERSATION
            self._resolve_conversation()
            self.user_message = self._store_call(
                "append user message",
                self.store.append_message,
                self.conversation_id,
                "user",
                self.message,
                self.owner_id,
            )
            history = [
                record.as_prompt_entry()
                for record in self._store_call("list messages", self.store.list_messages, self.conversation_id)
                if record.id != self.user_message.id
            ]
            self.prompt = build_prompt(self.model, history, self.message)
            self._upstream = self.client.open_stream(
                self.prompt,
                model=self.model,
                cancel_token=self.token,
                max_duration=self.config.max_stream_seconds,
            )
        except Exception:
            self.state = RelayState.FAILED
            raise
        self.state = RelayState.STREAMING_UPSTREAM
        logger.info(
            "Relay streaming for conversation %s (model=%s, history=%d, new=%s)",
            self.conversation_id,
            self.model,
            len(history),
            self.created_conversation,
        )
        return self

    def _validate(self) -> None:
        message = self._raw_message
        if not isinstance(message, str) or not message.strip():
            raise ValidationError(
                code="INVALID_MESSAGE",
                message="Message is required and must be a non-empty string",
            )
        model = self._raw_model
        if model is DEFAULT_MODEL:
            model = self.config.upstream.default_model
        if not isinstance(model, str) or not model.strip():
            raise ValidationError(code="INVALID_MODEL", message="Model must be a string")
        conversation_id = self._raw_conversation_id
        if conversation_id is not None and not isinstance(conversation_id, str):
            raise ValidationError(code="INVALID_CONVERSATION_ID", message="conversationId must be a string")

        self.message = message.strip()
        self.model = model
        self.conversation_id = conversation_id or None

    def _resolve_conversation(self) -> None:
        if self.conversation_id is None:
            conv = self._store_call("create conversation", self.store.create_conversation, self.owner_id)
            self.conversation_id = conv.id
            self.created_conversation = True
            self.has_title = False
            return

        conv = self._store_call("get conversation", self.store.get_conversation, self.conversation_id)
        if conv is None or conv.owner_id != self.owner_id:
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message="Conversation not found")
        self.has_title = bool(conv.title)

    def _store_call(self, action: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except RelayError:
            raise
        except Exception as exc:
            logger.exception("Store failed to %s (conversation=%s)", action, self.conversation_id)
            raise StoreError(code="STORE_ERROR", message=f"Failed to {action}") from exc

    # ---------------------------------------------------------------- stream
    def stream(self) -> Iterator[bytes]:
        """Yield each upstream text delta as UTF-8 bytes, in arrival order."""
        if self.state is not RelayState.STREAMING_UPSTREAM or self._upstream is None:
            raise RuntimeError(f"relay session is not streaming (state={self.state.value})")

        upstream = self._upstream
        frames = iter(upstream)
        try:
            for frame in frames:
                if frame.content:
                    self._chunks.append(frame.content)
                    yield frame.content.encode("utf-8")
                if frame.done:
                    break
            self.state = RelayState.COMPLETED
        except StreamCancelled as exc:
            self.state = RelayState.ABORTED
            logger.info("Upstream stream for conversation %s ended early (%s)", self.conversation_id, exc.reason)
        except GeneratorExit:
            self.state = RelayState.ABORTED
            self.cancel("client")
            raise
        except UpstreamStreamError as exc:
            self.state = RelayState.FAILED
            logger.error("Upstream stream for conversation %s failed: %s", self.conversation_id, exc.message)
            raise
        except Exception:
            self.state = RelayState.FAILED
            logger.exception("Relay for conversation %s failed mid-stream", self.conversation_id)
            raise
        finally:
            frames.close()
            upstream.close()
            self._schedule_persistence()

    # ----------------------------------------------------------- persistence
    def _schedule_persistence(self) -> None:
        text = self.accumulated
        logger.info(
            "Relay for conversation %s finished as %s with %d chars",
            self.conversation_id,
            self.state.value,
            len(text),
        )
        if not text:
            return
        try:
            self.persistence = self._executor.submit(self._persist_reply, text)
        except RuntimeError:
            logger.warning("Persistence executor unavailable; saving reply inline")
            future: Future = Future()
            future.set_result(self._persist_reply(text))
            self.persistence = future
            return
        self.persistence.add_done_callback(self._log_persistence_crash)

    def _persist_reply(self, text: str) -> Optional[MessageRecord]:
        try:
            record = self.store.append_message(self.conversation_id, "assistant", text, self.owner_id)
        except Exception:
            logger.exception("Failed to insert assistant message for conversation %s", self.conversation_id)
            return None

        if not self.has_title:
            try:
                # Re-read so a concurrent send that already titled the conversation wins.
                if not self.store.get_conversation_title(self.conversation_id):
                    title = synthesize_title(self.message)
                    self.store.update_conversation_title(self.conversation_id, title)
                    logger.info("Titled conversation %s: %s", self.conversation_id, title)
            except Exception:
                logger.exception("Failed to update title for conversation %s", self.conversation_id)
        return record

    @staticmethod
    def _log_persistence_crash(future: Future) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error("Assistant reply persistence crashed: %s", exc)


class ChatRelayService:
    """Core chat relay used by both the API and direct Python consumers."""

    def __init__(
        self,
        config: Optional[RelayConfig] = None,
        *,
        store: Optional[ConversationStore] = None,
        client: Optional[OllamaStreamClient] = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.store = store or InMemoryConversationStore()
        self.client = client or OllamaStreamClient(self.config.upstream)
        self._executor = ThreadPoolExecutor(
            max_workers=self.config.persistence_workers,
            thread_name_prefix="relay-persist",
        )

    def open_session(
        self,
        owner_id: str,
        message: Any,
        *,
        model: Any = DEFAULT_MODEL,
        conversation_id: Any = None,
    ) -> RelaySession:
        """Return a session that is already streaming, or raise a :class:`RelayError`."""
        session = RelaySession(
            store=self.store,
            client=self.client,
            config=self.config,
            executor=self._executor,
            owner_id=owner_id,
            message=message,
            model=model,
            conversation_id=conversation_id,
        )
        return session.open()

    def list_conversations(self, owner_id: str) -> List[Dict[str, Any]]:
        return [
            {"id": conv.id, "title": conv.title, "created_at": conv.created_at.isoformat()}
            for conv in self.store.list_conversations(owner_id)
        ]

    def list_messages(self, owner_id: str, conversation_id: str) -> List[Dict[str, Any]]:
        conv = self.store.get_conversation(conversation_id)
        if conv is None or conv.owner_id != owner_id:
            raise NotFoundError(code="CONVERSATION_NOT_FOUND", message="Conversation not found")
        return [
            {
                "id": record.id,
                "role": record.role,
                "content": record.content,
                "created_at": record.created_at.isoformat(),
            }
            for record in self.store.list_messages(conversation_id)
        ]

    def delete_message(self, owner_id: str, message_id: str) -> None:
        if not self.store.delete_message(message_id, owner_id):
            raise NotFoundError(code="MESSAGE_NOT_FOUND", message="Message not found")
        logger.info("Deleted message %s", message_id)

    def upstream_status(self) -> str:
        try:
            self.client.list_models()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Model server health probe failed: %s", exc)
            return "unreachable"
        return "ok"

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting persistence work; ``wait`` drains pending writes."""
        self._executor.shutdown(wait=wait)
