"""
Base backend abstraction.
Every provider implements this interface so the relay and the title
generator can treat them uniformly.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator

from chatdesk.errors import CredentialError

logger = logging.getLogger(__name__)


@dataclass
class BackendResponse:
    """Standardized response from a buffered completion call."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant content from response data."""
        choices = self.data.get("choices") or []
        if choices:
            return (choices[0].get("message") or {}).get("content") or ""
        return ""


class CancelToken:
    """One-shot stop signal shared between a turn and its upstream stream."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def validate_credential(api_key: str | None) -> str:
    """
    Check a provider key before it is used.
    Empty keys are rejected; keys that don't look like OpenRouter/OpenAI keys
    only produce a warning since other compatible providers use other formats.
    """
    if not api_key or not api_key.strip():
        raise CredentialError("No provider API key is configured")
    key = api_key.strip()
    if not key.startswith("sk-"):
        logger.warning("Provider API key does not start with 'sk-'; using it anyway")
    return key


class BaseBackend(abc.ABC):
    """
    Abstract base for chat-completion providers.
    Both calls take OpenAI-format messages ({role, content} dicts).
    """

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    async def complete(self, messages: list[dict], model: str, api_key: str) -> BackendResponse:
        """
        Buffered completion.
        Never raises for upstream failures; returns ok=False with an error instead.
        """
        ...

    @abc.abstractmethod
    def stream(
        self,
        messages: list[dict],
        model: str,
        api_key: str,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[str]:
        """
        Incremental completion, yielding text fragments in arrival order.
        Raises UpstreamHandshakeError before the first fragment if the provider
        rejects the call, UpstreamStreamError if the stream breaks afterwards.
        """
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
