"""Provider-independent request, reply and streaming shapes.

Adapters convert their native formats to and from these models; nothing
provider-specific is visible outside the ``providers`` package.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from ..models import TokenUsage, ToolCall


class FinishReason(Enum):
    STOP = "stop"
    LENGTH = "length"
    TOOL_CALLS = "tool_calls"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"


class ContentPart(BaseModel):
    """One part of a multi-part message: text or an inline image data URL."""

    type: Literal["text", "image_url"]
    text: Optional[str] = None
    image_url: Optional[str] = None

    @classmethod
    def of_text(cls, text: str) -> "ContentPart":
        return cls(type="text", text=text)

    @classmethod
    def of_image(cls, data_url: str) -> "ContentPart":
        return cls(type="image_url", image_url=data_url)


class ChatMessage(BaseModel):
    """A role-tagged message in the unified turn-based format."""

    role: Literal["system", "user", "assistant", "tool"]
    content: Union[str, List[ContentPart], None] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None

    def text(self) -> str:
        """Concatenated text of the message, ignoring images."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(part.text or "" for part in self.content if part.type == "text")

    def images(self) -> List[str]:
        if not isinstance(self.content, list):
            return []
        return [part.image_url for part in self.content if part.type == "image_url" and part.image_url]


class ToolSchema(BaseModel):
    """A function the model may call, described by a JSON schema."""

    name: str
    description: str = ""
    parameters: Dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


# Name of the built-in tool adapters replace with their provider-native search
WEB_SEARCH_TOOL = "web_search"


class ChatRequest(BaseModel):
    """Turn-based request."""

    model: str
    messages: List[ChatMessage]
    tools: Optional[List[ToolSchema]] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    extra_params: Dict[str, Any] = Field(default_factory=dict)


class InputMessage(BaseModel):
    type: Literal["message"] = "message"
    role: Literal["system", "user", "assistant"]
    content: List[ContentPart]


class FunctionCallItem(BaseModel):
    type: Literal["function_call"] = "function_call"
    call_id: str
    name: str
    arguments: str = "{}"


class FunctionCallOutputItem(BaseModel):
    type: Literal["function_call_output"] = "function_call_output"
    call_id: str
    output: str


InputItem = Union[InputMessage, FunctionCallItem, FunctionCallOutputItem]


class ResponseRequest(BaseModel):
    """Item-based request: structured input items instead of whole turns."""

    model: str
    input: List[InputItem]
    instructions: Optional[str] = None
    tools: Optional[List[ToolSchema]] = None
    max_tokens: Optional[int] = None
    stream: bool = False
    extra_params: Dict[str, Any] = Field(default_factory=dict)


class ChatReply(BaseModel):
    """A complete reply, whichever protocol produced it."""

    content: str = ""
    reasoning: str = ""
    reasoning_summary: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)  # data URLs
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[FinishReason] = None


class ToolCallDelta(BaseModel):
    """A fragment of a streamed tool call; fragments share an ``index``."""

    index: int
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


class ChatDelta(BaseModel):
    """One increment of a streamed reply."""

    content: str = ""
    reasoning: str = ""
    reasoning_summary: str = ""
    tool_calls: List[ToolCallDelta] = Field(default_factory=list)
    images: List[str] = Field(default_factory=list)
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[FinishReason] = None
