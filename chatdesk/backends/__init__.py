"""
Chat-completion providers for chatdesk.
"""
from chatdesk.backends.base import BaseBackend, BackendResponse, CancelToken, validate_credential
from chatdesk.backends.openrouter import OpenRouterBackend
from chatdesk.config import get_section

__all__ = [
    "BaseBackend",
    "BackendResponse",
    "CancelToken",
    "OpenRouterBackend",
    "make_backend",
    "validate_credential",
]


def make_backend(cfg: dict | None = None, transport=None) -> BaseBackend:
    """Build the configured provider backend from the provider section."""
    provider = get_section("provider", cfg)
    return OpenRouterBackend(
        name=provider["name"],
        url=provider["url"],
        timeout=provider.get("timeout", 120),
        referer=provider.get("referer", ""),
        app_title=provider.get("app_title", "chatdesk"),
        transport=transport,
    )
