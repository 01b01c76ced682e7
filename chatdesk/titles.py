"""
Title generator: short labels for new conversations.

After the first exchange in a conversation the relay queues a job that asks
the provider for a short title and writes it back. Runs on the background
queue, so it never holds up or fails the turn it came from.

Config (in config.yaml):

    provider:
      title_model: ""          # defaults to provider.default_model
    chat:
      title_max_chars: 50      # generated titles are cut here, plus "..."
      title_fallback_chars: 30 # fallback: the user's message cut here, plus "..."

If the provider call fails or returns nothing, the title falls back to a
truncation of the user's own message.
"""
from __future__ import annotations

import logging

from chatdesk.assembler import sanitize_content
from chatdesk.backends.base import BaseBackend
from chatdesk.config import get_section

logger = logging.getLogger(__name__)

TITLE_INSTRUCTION = (
    "Generate a short, fitting title (at most 5 words) for this conversation. "
    "Reply with the title only."
)

ELLIPSIS = "..."


def truncate_title(text: str, limit: int) -> str:
    """Cut text to limit characters, marking the cut with an ellipsis."""
    if len(text) > limit:
        return text[:limit] + ELLIPSIS
    return text


def fallback_title(user_message: str, limit: int = 30) -> str:
    """Deterministic title from the user's own message."""
    return truncate_title(sanitize_content(user_message), limit)


class TitleGenerator:
    """Asks the provider for a conversation title."""

    def __init__(self, backend: BaseBackend, cfg: dict | None = None):
        self.backend = backend
        provider = get_section("provider", cfg)
        chat = get_section("chat", cfg)
        self.model = provider.get("title_model") or provider["default_model"]
        self.max_chars = int(chat.get("title_max_chars", 50))
        self.fallback_chars = int(chat.get("title_fallback_chars", 30))
        self.default_title = chat.get("default_title", "New chat")

    def _fallback(self, user_message: str) -> str:
        return fallback_title(user_message, self.fallback_chars) or self.default_title

    async def generate(self, user_message: str, api_key: str) -> str:
        """
        Return a title for a conversation that opened with user_message.
        Never raises; failures produce the fallback title.
        """
        messages = [
            {"role": "system", "content": TITLE_INSTRUCTION},
            {"role": "user", "content": sanitize_content(user_message)},
        ]
        try:
            resp = await self.backend.complete(messages, self.model, api_key)
        except Exception as e:
            logger.warning("Title generation failed: %s", e)
            return self._fallback(user_message)

        if not resp.ok:
            logger.warning("Title generation failed: %s", resp.error)
            return self._fallback(user_message)

        title = sanitize_content(resp.content)
        if not title:
            logger.info("Title generation returned nothing, using fallback")
            return self._fallback(user_message)

        return truncate_title(title, self.max_chars)
