"""
Conversation assembler.

Turns a conversation's stored history plus the new user input into the
OpenAI-format message list sent upstream:

    [system] + history (oldest first) + [new user turn]

Pure functions, no I/O. Limits come from the chat config section.
"""

from __future__ import annotations

import logging
import re

from chatdesk.errors import ContextError

logger = logging.getLogger(__name__)

MAX_CONTEXT_MESSAGES = 100
MAX_MESSAGE_CHARS = 100_000

VALID_ROLES = {"system", "user", "assistant"}

# C0 controls and DEL, except tab, newline and carriage return
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_content(text) -> str:
    """Strip control characters and surrounding whitespace. Non-strings become ''."""
    if not isinstance(text, str):
        return ""
    return _CONTROL_CHARS.sub("", text).strip()


def validate_context(
    messages: list[dict],
    max_messages: int = MAX_CONTEXT_MESSAGES,
    max_chars: int = MAX_MESSAGE_CHARS,
) -> list[dict]:
    """
    Check and normalise a context before it goes upstream.

    Raises ContextError for an empty list, more than max_messages entries,
    or an unknown role. Each content is sanitized and capped at max_chars.
    """
    if not messages:
        raise ContextError("Messages must not be empty")
    if len(messages) > max_messages:
        raise ContextError(f"Too many messages (max {max_messages})")

    validated = []
    for msg in messages:
        role = msg.get("role")
        if role not in VALID_ROLES:
            raise ContextError(f"Invalid message role: {role!r}")
        content = sanitize_content(msg.get("content"))
        if len(content) > max_chars:
            logger.debug("Capping %s message at %d chars (was %d)", role, max_chars, len(content))
            content = content[:max_chars]
        validated.append({"role": role, "content": content})
    return validated


def build_context(
    history: list,
    user_content: str,
    system_prompt: str | None = None,
    default_prompt: str = "",
    max_messages: int = MAX_CONTEXT_MESSAGES,
    max_chars: int = MAX_MESSAGE_CHARS,
) -> list[dict]:
    """
    Assemble the upstream context for one turn.

    history holds stored Message records (or role/content dicts) oldest first
    and must not already contain the new user turn. A custom system_prompt
    replaces default_prompt; either way there is exactly one system entry.
    Image references are never part of the context.
    """
    prompt = system_prompt if system_prompt and system_prompt.strip() else default_prompt
    context = [{"role": "system", "content": prompt}]
    for msg in history:
        context.append(msg if isinstance(msg, dict) else msg.to_openai_format())
    context.append({"role": "user", "content": user_content})
    return validate_context(context, max_messages=max_messages, max_chars=max_chars)
