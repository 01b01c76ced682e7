"""
Request bodies for the HTTP API.
The web client sends camelCase; fields are snake_case with aliases.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())


class ChatBody(_Body):
    message: str = ""
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    model: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imageUrl")


class DemoChatBody(_Body):
    message: str


class LoginBody(_Body):
    email: str = Field(min_length=3, max_length=254)
    name: str = ""
    picture: Optional[str] = None


class ConversationCreate(_Body):
    id: Optional[str] = None
    title: Optional[str] = None
    model: Optional[str] = None
    folder_id: Optional[str] = Field(None, alias="folderId")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")


class ConversationUpdate(_Body):
    title: Optional[str] = Field(None, max_length=200)
    model: Optional[str] = None
    folder_id: Optional[str] = Field(None, alias="folderId")
    system_prompt: Optional[str] = Field(None, alias="systemPrompt")
    is_pinned: Optional[bool] = Field(None, alias="isPinned")
    is_archived: Optional[bool] = Field(None, alias="isArchived")


class FolderCreate(_Body):
    name: str = Field(min_length=1, max_length=100)
    color: Optional[str] = None


class FolderUpdate(_Body):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    color: Optional[str] = None


class ReactionCreate(_Body):
    reaction: str = Field(min_length=1, max_length=10)


class AdminFlag(_Body):
    is_admin: bool = Field(alias="isAdmin")


class ApiKeyCreate(_Body):
    provider: str = Field(min_length=1, max_length=50)
    api_key: str = Field(min_length=1, alias="apiKey")


class ApiKeyUpdate(_Body):
    api_key: Optional[str] = Field(None, min_length=1, alias="apiKey")
    is_active: Optional[bool] = Field(None, alias="isActive")
