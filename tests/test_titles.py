"""
Tests for conversation title generation.
"""

import pytest

from chatdesk.titles import TITLE_INSTRUCTION, TitleGenerator, fallback_title, truncate_title

from conftest import FakeBackend


class ExplodingBackend(FakeBackend):
    async def complete(self, messages, model, api_key):
        raise RuntimeError("socket closed")


def test_truncate_title():
    assert truncate_title("short", 10) == "short"
    assert truncate_title("a" * 12, 10) == "a" * 10 + "..."


def test_fallback_title_sanitizes_and_cuts():
    """Fallback titles are sanitized and cut to 30 characters."""
    assert fallback_title("  What is the capital of Australia, really?  ") == "What is the capital of Austral..."
    assert fallback_title("Hi\x00 there") == "Hi there"


@pytest.mark.asyncio
async def test_generate_uses_title_instruction(cfg):
    """The title call sends the fixed instruction and the user's message."""
    backend = FakeBackend(title="  Capital cities  ")
    title = await TitleGenerator(backend, cfg).generate("What is the capital of Australia?", "sk-x")

    assert title == "Capital cities"
    call = backend.complete_calls[0]
    assert call["messages"][0] == {"role": "system", "content": TITLE_INSTRUCTION}
    assert call["messages"][1]["content"] == "What is the capital of Australia?"
    assert call["api_key"] == "sk-x"


@pytest.mark.asyncio
async def test_generate_prefers_title_model(cfg):
    """title_model is used when configured."""
    cfg["provider"]["title_model"] = "cheap/model"
    backend = FakeBackend()
    await TitleGenerator(backend, cfg).generate("hello", "sk-x")
    assert backend.complete_calls[0]["model"] == "cheap/model"


@pytest.mark.asyncio
async def test_long_generated_title_is_cut(cfg):
    """Long model titles are cut to 50 characters."""
    backend = FakeBackend(title="x" * 80)
    title = await TitleGenerator(backend, cfg).generate("hello", "sk-x")
    assert title == "x" * 50 + "..."


@pytest.mark.asyncio
async def test_failed_call_falls_back(cfg):
    """A failed call falls back to the user's message."""
    title = await TitleGenerator(FakeBackend(complete_ok=False), cfg).generate("Plan my week", "sk-x")
    assert title == "Plan my week"


@pytest.mark.asyncio
async def test_empty_answer_falls_back(cfg):
    """An empty answer falls back to the user's message."""
    title = await TitleGenerator(FakeBackend(title=""), cfg).generate("Plan my week", "sk-x")
    assert title == "Plan my week"


@pytest.mark.asyncio
async def test_exception_never_escapes(cfg):
    """Backend exceptions never escape generate()."""
    title = await TitleGenerator(ExplodingBackend(), cfg).generate("Plan my week", "sk-x")
    assert title == "Plan my week"


@pytest.mark.asyncio
async def test_empty_message_gets_default_title(cfg):
    """An empty message gets the default title."""
    title = await TitleGenerator(FakeBackend(complete_ok=False), cfg).generate("", "sk-x")
    assert title == "New chat"


@pytest.mark.asyncio
async def test_same_message_gets_same_title(cfg):
    """Titling is repeatable for a given message, whether the model answers or not."""
    titles = TitleGenerator(FakeBackend(), cfg)
    first = await titles.generate("What's the weather in Paris?", "sk-x")
    assert await titles.generate("What's the weather in Paris?", "sk-x") == first == "Weather in Paris"

    fallback = TitleGenerator(FakeBackend(complete_ok=False), cfg)
    text = "Plan a hiking trip to the mountains in autumn"
    first = await fallback.generate(text, "sk-x")
    assert await fallback.generate(text, "sk-x") == first == text[:30] + "..."
