"""Provider adapters behind one request/reply interface."""

from .anthropic_provider import AnthropicProvider
from .base import BaseProvider
from .factory import get_provider
from .google_provider import GoogleProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider
from .streaming import StreamAccumulator, collect_stream
from .types import (
    WEB_SEARCH_TOOL,
    ChatDelta,
    ChatMessage,
    ChatReply,
    ChatRequest,
    ContentPart,
    FinishReason,
    FunctionCallItem,
    FunctionCallOutputItem,
    InputItem,
    InputMessage,
    ResponseRequest,
    ToolCallDelta,
    ToolSchema,
)

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "GoogleProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "get_provider",
    "StreamAccumulator",
    "collect_stream",
    "WEB_SEARCH_TOOL",
    "ChatDelta",
    "ChatMessage",
    "ChatReply",
    "ChatRequest",
    "ContentPart",
    "FinishReason",
    "FunctionCallItem",
    "FunctionCallOutputItem",
    "InputItem",
    "InputMessage",
    "ResponseRequest",
    "ToolCallDelta",
    "ToolSchema",
]
