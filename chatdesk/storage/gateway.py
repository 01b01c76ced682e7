"""
Async facade over SQLiteStore for the chat relay.

Every call runs the blocking store method in a worker thread, so each read
and write is a suspension point that never stalls the event loop.
"""

from __future__ import annotations

import asyncio
import logging

from chatdesk.storage.models import Attachment, Conversation, Message
from chatdesk.storage.sqlite_store import SQLiteStore

logger = logging.getLogger(__name__)


class StoreGateway:
    """The persistence operations a chat turn needs."""

    def __init__(self, store: SQLiteStore):
        self.store = store

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await asyncio.to_thread(self.store.get_conversation, conversation_id)

    async def update_conversation(self, conversation_id: str, **updates) -> Conversation | None:
        return await asyncio.to_thread(
            lambda: self.store.update_conversation(conversation_id, **updates)
        )

    async def get_messages(self, conversation_id: str) -> list[Message]:
        return await asyncio.to_thread(self.store.get_messages, conversation_id)

    async def count_messages(self, conversation_id: str) -> int:
        return await asyncio.to_thread(self.store.count_messages, conversation_id)

    async def create_message(self, conversation_id: str, role: str, content: str) -> Message:
        msg = Message(conversation_id=conversation_id, role=role, content=content)
        return await asyncio.to_thread(self.store.create_message, msg)

    async def create_attachment(self, message_id: str, url: str, **fields) -> Attachment:
        attachment = Attachment(message_id=message_id, url=url, **fields)
        return await asyncio.to_thread(self.store.create_attachment, attachment)

    async def get_active_api_key(self, provider: str) -> str | None:
        return await asyncio.to_thread(self.store.get_active_api_key, provider)
