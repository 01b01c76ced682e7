"""
Streaming relay: the core of chatdesk.

One chat turn moves through

    VALIDATING → CONTEXT_BUILT → STREAMING → FINALIZING → COMPLETED
                                     ↓            ↓
                                  ABORTED       FAILED

open_turn() does every check and the user-message write, and raises
ChatError subclasses so the HTTP layer can answer with a plain status code.
stream_turn() is the event generator behind the text/event-stream response:

    {"content": "<fragment>", "done": false}       per fragment, in arrival order
    {"content": "", "done": true, "messageId": id}   after the assistant message is stored
    {"error": "<reason>", "done": true}            upstream or storage failure

A cancelled turn (stop button, or the client went away) ends without a
terminal event. Only a naturally completed stream stores an assistant
message; partial output is never persisted.
"""

from __future__ import annotations

import logging
import posixpath
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator
from uuid import uuid4

from chatdesk.assembler import build_context, sanitize_content
from chatdesk.backends.base import BaseBackend, CancelToken, validate_credential
from chatdesk.config import get_section
from chatdesk.errors import (
    AuthorizationError,
    ConflictError,
    NotAuthenticatedError,
    NotFoundError,
    UpstreamError,
    UpstreamHandshakeError,
    UpstreamStreamError,
    ValidationError,
)
from chatdesk.storage.gateway import StoreGateway
from chatdesk.storage.models import User
from chatdesk.tasks import BackgroundQueue
from chatdesk.titles import TitleGenerator

logger = logging.getLogger(__name__)


class TurnState(str, Enum):
    VALIDATING = "validating"
    CONTEXT_BUILT = "context_built"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {TurnState.COMPLETED, TurnState.ABORTED, TurnState.FAILED}


@dataclass
class ChatRequest:
    message: str = ""
    conversation_id: str | None = None
    model: str | None = None
    image_url: str | None = None


@dataclass
class Turn:
    """Everything one chat turn needs between open_turn() and stream_turn()."""
    user_id: str
    id: str = field(default_factory=lambda: uuid4().hex)
    conversation_id: str | None = None
    model: str = ""
    api_key: str = ""
    content: str = ""
    context: list[dict] = field(default_factory=list)
    user_message_id: str | None = None
    state: TurnState = TurnState.VALIDATING
    cancel: CancelToken = field(default_factory=CancelToken)
    registry: TurnRegistry | None = field(default=None, repr=False)

    def release(self) -> None:
        """Drop this turn from its registry. Safe to call more than once."""
        if self.registry is not None:
            self.registry.release(self)


class TurnRegistry:
    """
    Active turns in this process, by turn id and by conversation.
    With reject_concurrent set, a conversation holds at most one active turn.
    """

    def __init__(self, reject_concurrent: bool = True):
        self.reject_concurrent = reject_concurrent
        self._turns: dict[str, Turn] = {}
        self._by_conversation: dict[str, str] = {}

    def claim(self, turn: Turn) -> None:
        conv_id = turn.conversation_id
        if conv_id and self.reject_concurrent and conv_id in self._by_conversation:
            raise ConflictError()
        self._turns[turn.id] = turn
        if conv_id:
            self._by_conversation.setdefault(conv_id, turn.id)
        turn.registry = self

    def release(self, turn: Turn) -> None:
        if self._turns.pop(turn.id, None) is None:
            return
        if turn.conversation_id and self._by_conversation.get(turn.conversation_id) == turn.id:
            del self._by_conversation[turn.conversation_id]
        logger.debug("Released turn %s (%s)", turn.id, turn.state.value)

    def get(self, turn_id: str) -> Turn | None:
        return self._turns.get(turn_id)

    def __len__(self) -> int:
        return len(self._turns)


def _client_reason(error: UpstreamError) -> str:
    """Short failure reason for the browser. Provider bodies stay in the log."""
    if isinstance(error, UpstreamHandshakeError) and error.upstream_status:
        return f"AI provider returned HTTP {error.upstream_status}"
    if isinstance(error, UpstreamStreamError):
        return "AI provider stream interrupted"
    return "AI provider request failed"


class ChatRelay:
    """Runs chat turns between the web client, storage and the provider."""

    def __init__(
        self,
        gateway: StoreGateway,
        backend: BaseBackend,
        titles: TitleGenerator,
        queue: BackgroundQueue,
        registry: TurnRegistry | None = None,
        cfg: dict | None = None,
    ):
        self.gateway = gateway
        self.backend = backend
        self.titles = titles
        self.queue = queue
        self.provider = get_section("provider", cfg)
        self.chat = get_section("chat", cfg)
        self.registry = registry or TurnRegistry(
            reject_concurrent=bool(self.chat.get("reject_concurrent_turns", True))
        )

    async def resolve_api_key(self) -> str:
        """Active admin-managed key for the provider, else the configured one."""
        stored = await self.gateway.get_active_api_key(self.provider["name"])
        return validate_credential(stored or self.provider.get("api_key"))

    def _build(self, history: list, content: str, system_prompt: str | None) -> list[dict]:
        return build_context(
            history,
            content,
            system_prompt=system_prompt,
            default_prompt=self.chat["system_prompt"],
            max_messages=int(self.chat["max_context_messages"]),
            max_chars=int(self.chat["max_message_chars"]),
        )

    # ─ Opening a turn ─────────────────────────────────────────────────────

    async def open_turn(self, user: User | None, request: ChatRequest) -> Turn:
        """
        Validate the request, build the context and store the user message.
        Raises before any write if a check fails.
        """
        if user is None:
            raise NotAuthenticatedError()

        turn = Turn(user_id=user.id, conversation_id=request.conversation_id or None)
        content = sanitize_content(request.message)
        image_url = (request.image_url or "").strip()
        if not content and not image_url:
            raise ValidationError("A message or an image is required")

        conversation = None
        if turn.conversation_id:
            conversation = await self.gateway.get_conversation(turn.conversation_id)
            if conversation is None:
                raise NotFoundError("Conversation not found")
            if conversation.user_id != user.id:
                raise AuthorizationError("You do not have access to this conversation")

        turn.api_key = await self.resolve_api_key()
        turn.model = request.model or self.provider["default_model"]
        turn.content = content

        # History is read before the new message is stored, so it appears once
        history = await self.gateway.get_messages(conversation.id) if conversation else []
        turn.context = self._build(
            history, content, conversation.system_prompt if conversation else None
        )
        turn.state = TurnState.CONTEXT_BUILT

        self.registry.claim(turn)
        if conversation is None:
            return turn

        try:
            user_msg = await self.gateway.create_message(conversation.id, "user", content)
        except BaseException:
            # CancelledError included
            turn.release()
            raise
        turn.user_message_id = user_msg.id

        if image_url:
            try:
                await self.gateway.create_attachment(
                    user_msg.id,
                    image_url,
                    type="image",
                    filename=posixpath.basename(image_url) or "image",
                    mime_type="image/jpeg",
                )
            except Exception as e:
                logger.warning("Could not store attachment for message %s: %s", user_msg.id, e)

        logger.info(
            "Turn %s opened (user=%s, conv=%s, model=%s, %d context messages)",
            turn.id, user.id, conversation.id, turn.model, len(turn.context),
        )
        return turn

    # ─ Streaming ──────────────────────────────────────────────────────────

    async def stream_turn(self, turn: Turn) -> AsyncIterator[dict]:
        """Relay fragments to the client, then finalize. See module docstring."""
        parts: list[str] = []
        turn.state = TurnState.STREAMING
        try:
            try:
                fragments = self.backend.stream(
                    turn.context, turn.model, turn.api_key, cancel=turn.cancel
                )
                async with aclosing(fragments) as stream:
                    async for fragment in stream:
                        if turn.cancel.cancelled:
                            break
                        parts.append(fragment)
                        yield {"content": fragment, "done": False}
            except UpstreamError as e:
                turn.state = TurnState.FAILED
                logger.warning("Turn %s failed upstream: %s", turn.id, e)
                yield {"error": _client_reason(e), "done": True}
                return
            except Exception as e:
                turn.state = TurnState.FAILED
                logger.exception("Turn %s failed while streaming: %s", turn.id, e)
                yield {"error": "Failed to receive a response", "done": True}
                return

            if turn.cancel.cancelled:
                turn.state = TurnState.ABORTED
                logger.info("Turn %s cancelled after %d fragment(s)", turn.id, len(parts))
                return

            turn.state = TurnState.FINALIZING
            try:
                message_id = await self._finalize(turn, "".join(parts))
            except Exception as e:
                turn.state = TurnState.FAILED
                logger.exception("Turn %s could not store the answer: %s", turn.id, e)
                yield {"error": "Failed to save the response", "done": True}
                return

            turn.state = TurnState.COMPLETED
            yield {"content": "", "done": True, "messageId": message_id}
        finally:
            if turn.state not in TERMINAL_STATES:
                # Consumer closed the generator mid-stream
                turn.state = TurnState.ABORTED
                logger.info("Turn %s aborted by client", turn.id)
            turn.release()

    async def _finalize(self, turn: Turn, text: str) -> str:
        """Store the assistant message and queue the title job. Returns the message id."""
        if not turn.conversation_id:
            return uuid4().hex

        msg = await self.gateway.create_message(turn.conversation_id, "assistant", text)
        logger.info("Turn %s completed (%d chars)", turn.id, len(text))
        self.queue.submit(self._generate_title, turn.conversation_id, turn.content, turn.api_key)
        return msg.id

    async def _generate_title(self, conversation_id: str, user_message: str, api_key: str) -> None:
        """Title a conversation after its first exchange, unless it was renamed."""
        if await self.gateway.count_messages(conversation_id) > 2:
            return
        conversation = await self.gateway.get_conversation(conversation_id)
        if conversation is None or conversation.title != self.chat["default_title"]:
            return

        title = await self.titles.generate(user_message, api_key)
        await self.gateway.update_conversation(conversation_id, title=title)
        logger.debug("Titled conversation %s: %r", conversation_id, title)

    def cancel(self, turn_id: str, user: User) -> bool:
        """Explicit stop. False if the turn is unknown or belongs to someone else."""
        turn = self.registry.get(turn_id)
        if turn is None or turn.user_id != user.id:
            return False
        turn.cancel.cancel()
        logger.info("Turn %s cancel requested", turn_id)
        return True

    # ─ Demo ───────────────────────────────────────────────────────────────

    async def open_demo(self, message: str) -> Turn:
        """Unauthenticated single-message turn. Nothing is stored."""
        content = sanitize_content(message)
        if not content:
            raise ValidationError("A message is required")
        turn = Turn(user_id="", content=content)
        turn.api_key = await self.resolve_api_key()
        turn.model = self.provider["default_model"]
        turn.context = self._build([], content, self.chat["demo_system_prompt"])
        turn.state = TurnState.CONTEXT_BUILT
        return turn

    async def demo_turn(self, turn: Turn) -> AsyncIterator[dict]:
        """Buffered provider call relayed with the same event shape."""
        turn.state = TurnState.STREAMING
        resp = await self.backend.complete(turn.context, turn.model, turn.api_key)
        if not resp.ok:
            turn.state = TurnState.FAILED
            logger.warning("Demo turn failed: %s", resp.error)
            yield {"error": "Failed to receive a response", "done": True}
            return

        turn.state = TurnState.COMPLETED
        if resp.content:
            yield {"content": resp.content, "done": False}
        yield {"content": "", "done": True}
