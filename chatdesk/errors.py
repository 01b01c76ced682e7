"""
Error taxonomy.

Every error the request layer can surface is a ChatError carrying the HTTP
status it maps to. Inside an open event stream the relay turns them into a
single terminal error event instead.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for errors surfaced to the client."""

    status_code = 500

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or "error"
        if status_code is not None:
            self.status_code = status_code

    def __str__(self) -> str:
        return self.message


class NotAuthenticatedError(ChatError):
    """Please sign in first."""
    status_code = 401


class AuthorizationError(ChatError):
    """You do not have access to this resource."""
    status_code = 403


class NotFoundError(ChatError):
    """Not found."""
    status_code = 404


class ValidationError(ChatError):
    """Invalid request."""
    status_code = 400


class ContextError(ValidationError):
    """Conversation context is invalid."""


class ConflictError(ChatError):
    """Another turn is already in progress for this conversation."""
    status_code = 409


class CredentialError(ChatError):
    """No provider API key is configured."""
    status_code = 503


class UpstreamError(ChatError):
    """The AI provider request failed."""
    status_code = 502


class UpstreamHandshakeError(UpstreamError):
    """
    The provider rejected the request or could not be reached,
    before any fragment was produced.
    """

    def __init__(self, message: str = "", upstream_status: int | None = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class UpstreamStreamError(UpstreamError):
    """The provider stream broke after it had started."""
