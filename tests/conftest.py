"""
Shared fixtures: a temp SQLite store, a scripted provider backend, and a
minimal config dict.
"""

import asyncio

import pytest

from chatdesk.backends.base import BaseBackend, BackendResponse
from chatdesk.errors import UpstreamHandshakeError, UpstreamStreamError
from chatdesk.storage.models import Conversation, User
from chatdesk.storage.sqlite_store import SQLiteStore


class FakeBackend(BaseBackend):
    """
    Scripted provider.
    stream() yields `fragments`; handshake_status makes it fail before the
    first fragment, fail_after=N breaks the stream after N fragments, and
    `gate` (an asyncio.Event) pauses after each fragment until set.
    """

    def __init__(
        self,
        fragments=None,
        handshake_status=None,
        fail_after=None,
        title="Weather in Paris",
        complete_ok=True,
        gate=None,
    ):
        super().__init__(name="fake", url="http://fake")
        self.fragments = fragments if fragments is not None else ["Hel", "lo", "!"]
        self.handshake_status = handshake_status
        self.fail_after = fail_after
        self.title = title
        self.complete_ok = complete_ok
        self.gate = gate
        self.stream_calls = []
        self.complete_calls = []
        self.closed = 0

    async def complete(self, messages, model, api_key):
        self.complete_calls.append({"messages": messages, "model": model, "api_key": api_key})
        if not self.complete_ok:
            return BackendResponse(ok=False, status_code=500, error="HTTP 500: boom")
        return BackendResponse(
            ok=True,
            data={"choices": [{"message": {"content": self.title}}]},
        )

    async def stream(self, messages, model, api_key, cancel=None):
        self.stream_calls.append({"messages": messages, "model": model, "api_key": api_key})
        if self.handshake_status is not None:
            raise UpstreamHandshakeError(
                f"Provider returned HTTP {self.handshake_status}",
                upstream_status=self.handshake_status,
            )
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise UpstreamStreamError("Provider stream interrupted: connection reset")
                if cancel is not None and cancel.cancelled:
                    return
                yield fragment
                if self.gate is not None:
                    await self.gate.wait()
                    self.gate.clear()
        finally:
            self.closed += 1


@pytest.fixture
def store(tmp_path):
    """Create a fresh SQLite store for each test."""
    return SQLiteStore(str(tmp_path / "test.db"))


@pytest.fixture
def user(store):
    return store.create_user(User(email="ada@example.com", name="Ada"))


@pytest.fixture
def other_user(store):
    return store.create_user(User(email="bob@example.com", name="Bob"))


@pytest.fixture
def conversation(store, user):
    return store.create_conversation(Conversation(user_id=user.id, model="test/model"))


@pytest.fixture
def cfg(tmp_path):
    return {
        "server": {"host": "127.0.0.1", "port": 5001},
        "provider": {
            "name": "openrouter",
            "url": "http://fake-provider/api/v1",
            "api_key": "sk-or-test-key-1234",
            "default_model": "test/model",
            "timeout": 5,
        },
        "storage": {"sqlite_path": str(tmp_path / "app.db")},
        "chat": {"reject_concurrent_turns": True},
        "auth": {"session_secret": "test-secret", "dev_login": True},
        "logging": {"level": "WARNING"},
    }


async def collect(agen):
    """Drain an async generator into a list."""
    return [item async for item in agen]


async def wait_for(predicate, timeout=2.0):
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
