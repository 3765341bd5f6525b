"""Categorization of turn failures into user-facing notes."""

import asyncio
from typing import Optional

import httpx

from ..models import SYSTEM_MODEL_MARKER
from ..retry import get_status_code

ERROR_NOTES = {
    "timeout": "[Note: The request was interrupted by a network timeout]",
    "rate_limit": "[Note: The request failed due to rate limiting or quota exceeded]",
    "server_overload": "[Note: The request failed due to server overload]",
    "context_limit": "[Note: The request failed due to context length limits]",
    "auth_error": "[Note: The request failed due to authentication issues]",
    "network_error": "[Note: The request failed due to network connectivity issues]",
    "unknown_error": "[Note: The request failed with an unexpected error]",
}

_TIMEOUT_TYPES = (httpx.TimeoutException, asyncio.TimeoutError)

_RATE_LIMIT_KEYWORDS = (
    "rate limit",
    "quota",
    "credits",
    "billing",
    "usage limit",
    "requests per",
    "too many requests",
    "insufficient credits",
    "rate exceeded",
)
_OVERLOAD_KEYWORDS = (
    "overloaded",
    "capacity",
    "unavailable",
    "server error",
    "internal error",
    "high demand",
)
_CONTEXT_KEYWORDS = (
    "token limit",
    "maximum context",
    "context window",
    "context length",
    "context_length",
    "token count",
    "input too long",
    "sequence length",
)
_AUTH_KEYWORDS = (
    "authentication",
    "unauthorized",
    "api key",
    "invalid key",
    "permission",
    "access denied",
    "forbidden",
)
_NETWORK_KEYWORDS = (
    "connection",
    "network",
    "dns",
    "resolve",
    "unreachable",
    "no route",
)


def _categorize_status(status: Optional[int]) -> Optional[str]:
    if status is None:
        return None
    if status == 429:
        return "rate_limit"
    if status in (401, 403):
        return "auth_error"
    if status in (408, 504):
        return "timeout"
    if 500 <= status < 600:
        return "server_overload"
    return None


def _categorize_one(exception: BaseException) -> Optional[str]:
    if isinstance(exception, _TIMEOUT_TYPES):
        return "timeout"
    if isinstance(exception, httpx.TransportError):
        return "network_error"

    category = _categorize_status(get_status_code(exception))
    if category:
        return category

    text = str(exception).lower()
    if "timeout" in text or "timed out" in text:
        return "timeout"
    for category, keywords in (
        ("rate_limit", _RATE_LIMIT_KEYWORDS),
        ("server_overload", _OVERLOAD_KEYWORDS),
        ("context_limit", _CONTEXT_KEYWORDS),
        ("auth_error", _AUTH_KEYWORDS),
        ("network_error", _NETWORK_KEYWORDS),
    ):
        if any(keyword in text for keyword in keywords):
            return category
    return None


def categorize_error(exception: BaseException) -> str:
    """Categorize a failure, following the ``__cause__`` chain."""
    current: Optional[BaseException] = exception
    seen = set()
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        category = _categorize_one(current)
        if category:
            return category
        current = current.__cause__ or current.__context__
    return "unknown_error"


def get_error_note(error_type: str) -> str:
    return ERROR_NOTES.get(error_type, f"[Note: The request failed with {error_type}]")


def format_error_message(exception: BaseException) -> str:
    """Content of the assistant message persisted for a failed turn."""
    return f"An error occurred: {exception}\n\n{get_error_note(categorize_error(exception))}"


__all__ = [
    "ERROR_NOTES",
    "SYSTEM_MODEL_MARKER",
    "categorize_error",
    "format_error_message",
    "get_error_note",
]
