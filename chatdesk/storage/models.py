"""
Data models for chat storage.
These define the shape of records flowing between the store, the relay and the API.
to_api() renders the camelCase JSON the web client consumes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class User:
    id: str = field(default_factory=_new_id)
    email: str = ""
    name: str = ""
    picture: str | None = None
    is_admin: bool = False
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "User":
        return cls(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            picture=row["picture"],
            is_admin=bool(row["is_admin"]),
            created_at=row["created_at"],
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "picture": self.picture,
            "isAdmin": self.is_admin,
            "createdAt": self.created_at,
        }


@dataclass
class Folder:
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    name: str = ""
    color: str | None = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "Folder":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            color=row["color"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "color": self.color,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Conversation:
    """A conversation owned by exactly one user."""
    id: str = field(default_factory=_new_id)
    user_id: str = ""
    folder_id: str | None = None
    title: str = "New chat"
    model: str = ""
    system_prompt: str | None = None
    is_pinned: bool = False
    is_archived: bool = False
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "Conversation":
        return cls(
            id=row["id"],
            user_id=row["user_id"],
            folder_id=row["folder_id"],
            title=row["title"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            is_pinned=bool(row["is_pinned"]),
            is_archived=bool(row["is_archived"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "userId": self.user_id,
            "folderId": self.folder_id,
            "title": self.title,
            "model": self.model,
            "systemPrompt": self.system_prompt,
            "isPinned": self.is_pinned,
            "isArchived": self.is_archived,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Message:
    """A single message in a conversation."""
    id: str = field(default_factory=_new_id)
    conversation_id: str = ""
    role: str = ""           # "user" or "assistant"
    content: str = ""
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "Message":
        return cls(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )

    def to_openai_format(self) -> dict:
        """Role/content pair as sent upstream."""
        return {"role": self.role, "content": self.content}

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "conversationId": self.conversation_id,
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at,
        }


@dataclass
class Reaction:
    id: str = field(default_factory=_new_id)
    message_id: str = ""
    user_id: str = ""
    reaction: str = ""
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "Reaction":
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            user_id=row["user_id"],
            reaction=row["reaction"],
            created_at=row["created_at"],
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "userId": self.user_id,
            "reaction": self.reaction,
            "createdAt": self.created_at,
        }


@dataclass
class ApiKey:
    """Provider credential managed by admins. Never rendered unmasked."""
    id: str = field(default_factory=_new_id)
    provider: str = ""
    api_key: str = ""
    is_active: bool = True
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "ApiKey":
        return cls(
            id=row["id"],
            provider=row["provider"],
            api_key=row["api_key"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @property
    def masked(self) -> str:
        if not self.api_key:
            return ""
        return f"{self.api_key[:8]}...{self.api_key[-4:]}"

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "provider": self.provider,
            "apiKey": self.masked,
            "isActive": self.is_active,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Attachment:
    id: str = field(default_factory=_new_id)
    message_id: str = ""
    type: str = "image"      # "image" or "file"
    url: str = ""
    filename: str = ""
    size: int | None = None
    mime_type: str | None = None
    created_at: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row) -> "Attachment":
        return cls(
            id=row["id"],
            message_id=row["message_id"],
            type=row["type"],
            url=row["url"],
            filename=row["filename"],
            size=row["size"],
            mime_type=row["mime_type"],
            created_at=row["created_at"],
        )

    def to_api(self) -> dict:
        return {
            "id": self.id,
            "messageId": self.message_id,
            "type": self.type,
            "url": self.url,
            "filename": self.filename,
            "size": self.size,
            "mimeType": self.mime_type,
            "createdAt": self.created_at,
        }
