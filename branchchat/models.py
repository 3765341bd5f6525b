"""Data models for threads, messages, and provider configuration."""

from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum
import json
from pydantic import BaseModel, Field, field_validator


class _Unset:
    """Sentinel type for "argument not given" where ``None`` is meaningful."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

# Upper bound on ancestry walks
MAX_PATH_DEPTH = 1000

# Model label stored on assistant messages that report a failure
SYSTEM_MODEL_MARKER = "system"


class MessageRole(Enum):
    """Roles a message can take in a thread."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ProviderType(Enum):
    """Supported provider families."""

    AZURE = "azure"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OLLAMA = "ollama"
    OPENROUTER = "openrouter"
    LITELLM = "litellm"
    OPENAI_COMPATIBLE = "openai-compatible"


class Protocol(Enum):
    """Request/response shapes a model can be driven with."""

    CHAT_COMPLETION = "chat_completion"  # turn-based
    RESPONSE_API = "response_api"  # item-based


class McpTransportType(Enum):
    STREAMABLE_HTTP = "streamable_http"
    SSE = "sse"


class McpAuthType(Enum):
    NONE = "none"
    BEARER = "bearer"


def _parse_json(v):
    if isinstance(v, str):
        try:
            return json.loads(v)
        except json.JSONDecodeError:
            return None
    return v


class ToolCallFunction(BaseModel):
    name: str = ""
    arguments: str = ""


class ToolCall(BaseModel):
    """A structured tool-call request emitted by a model."""

    id: str
    type: str = "function"
    function: ToolCallFunction


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class McpAppUiData(BaseModel):
    """UI resource descriptor attached to a tool result for interactive rendering."""

    resource_uri: str
    permissions: Optional[List[str]] = None
    allowed_origins: Optional[List[str]] = None
    server_name: Optional[str] = None


class Thread(BaseModel):
    """A conversation thread.

    ``active_leaf_set`` distinguishes "root selected" (True, id None) from
    "unset" (False), where the most recent message is treated as the tip.
    """

    id: int
    title: str
    active_leaf_id: Optional[int] = None
    active_leaf_set: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Message(BaseModel):
    """A single node of a thread's message tree."""

    id: int
    thread_id: int
    role: MessageRole
    content: str = ""
    parent_id: Optional[int] = None
    tool_calls: Optional[List[ToolCall]] = None
    tool_call_id: Optional[str] = None
    reasoning: Optional[str] = None
    reasoning_summary: Optional[str] = None
    usage: Optional[TokenUsage] = None
    cost: Optional[float] = None
    model: Optional[str] = None
    mcp_app_ui: Optional[McpAppUiData] = None
    created_at: datetime

    @field_validator("tool_calls", "usage", "mcp_app_ui", mode="before")
    def parse_json_fields(cls, v):
        """Parse JSON strings stored in the database."""
        return _parse_json(v)

    @property
    def is_error(self) -> bool:
        return self.role == MessageRole.ASSISTANT and self.model == SYSTEM_MODEL_MARKER


class Attachment(BaseModel):
    """A file supplied with a user message, not yet persisted."""

    file_name: str
    mime_type: str
    data: bytes

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class LocalFile(BaseModel):
    """A persisted file belonging to a message."""

    id: int
    thread_id: int
    message_id: int
    file_name: str
    mime_type: str
    size: int
    is_generated: bool = False
    data: bytes = b""
    created_at: Optional[datetime] = None

    @property
    def is_image(self) -> bool:
        return self.mime_type.startswith("image/")


class BranchInfo(BaseModel):
    """Position of a message among its same-parent siblings (1-based)."""

    current: int
    total: int
    siblings: List[int] = Field(default_factory=list)


class ThreadSettings(BaseModel):
    """Per-thread model selection and request parameters."""

    thread_id: int
    provider_id: Optional[int] = None
    model_id: Optional[str] = None
    system_prompt: Optional[str] = None
    context_window: Optional[int] = Field(
        None, description="Maximum number of history messages sent to the model"
    )
    max_tokens: Optional[int] = None
    extra_params: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("extra_params", mode="before")
    def parse_extra_params(cls, v):
        if v is None:
            return {}
        return _parse_json(v) or {}


class ProviderRecord(BaseModel):
    """A configured provider endpoint."""

    id: int
    name: str
    type: ProviderType
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    supports_response_api: bool = False
    is_active: bool = False
    default_protocol: Optional[Protocol] = None
    sort_order: int = 0


class ModelConfigRecord(BaseModel):
    """Locally stored overrides for one model of one provider."""

    provider_id: int
    model_id: str
    enable_stream: Optional[bool] = None
    is_enabled: Optional[bool] = None
    sort_order: Optional[int] = None
    supports_tools: Optional[bool] = None
    supports_images: Optional[bool] = None
    protocol: Optional[Protocol] = None


class ManualModel(BaseModel):
    """A manually registered model.

    ``uuid`` is the key the rest of the system sees; ``model_id`` is the id
    sent to the provider API. A manual model whose uuid equals an API model
    id overrides that API entry.
    """

    id: Optional[int] = None
    uuid: str
    provider_id: int
    model_id: str
    name: str
    context_window: Optional[int] = None
    max_tokens: Optional[int] = None
    input_cost_per_1k: Optional[float] = Field(None, ge=0.0)
    output_cost_per_1k: Optional[float] = Field(None, ge=0.0)
    description: Optional[str] = None
    is_enabled: bool = True
    enable_stream: Optional[bool] = None
    supports_tools: Optional[bool] = None
    supports_images: Optional[bool] = None
    default_system_prompt: Optional[str] = None
    extra_params: Dict[str, Any] = Field(default_factory=dict)
    protocol: Optional[Protocol] = None

    @field_validator("extra_params", mode="before")
    def parse_extra_params(cls, v):
        if v is None:
            return {}
        return _parse_json(v) or {}


class ModelInfo(BaseModel):
    """Merged view of a model: API listing, manual override and local config."""

    id: str
    target_model_id: str
    name: str
    provider_id: int
    provider_name: str
    provider_type: ProviderType
    is_enabled: bool = True
    enable_stream: bool = True
    supports_tools: bool = True
    supports_images: bool = True
    protocol: Protocol = Protocol.CHAT_COMPLETION
    order: int = 1000
    is_manual: bool = False
    is_api_override: bool = False
    context_window: Optional[int] = None
    max_tokens: Optional[int] = None
    input_cost_per_1k: Optional[float] = None
    output_cost_per_1k: Optional[float] = None
    description: Optional[str] = None
    default_system_prompt: Optional[str] = None
    extra_params: Dict[str, Any] = Field(default_factory=dict)


class McpServerConfig(BaseModel):
    """A remote tool server."""

    id: int
    name: str
    type: McpTransportType = McpTransportType.STREAMABLE_HTTP
    url: str
    auth_type: McpAuthType = McpAuthType.NONE
    bearer_token: Optional[str] = None
    is_active: bool = True

    @field_validator("name")
    def validate_name(cls, v):
        if "__" in v:
            raise ValueError("Server name must not contain '__'")
        return v
