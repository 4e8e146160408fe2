"""Pydantic models for inbound request validation.

Covers the OpenAI Chat Completions and Anthropic Messages request shapes.
Unknown fields pass through; only what the translators rely on is checked.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="allow")


# ---------------------------------------------------------------------------
# Anthropic Messages
# ---------------------------------------------------------------------------


class ImageSource(_Lenient):
    """Image source for image content blocks."""

    type: Literal["base64", "url"]
    media_type: str | None = None
    data: str | None = None
    url: str | None = None


class ContentBlock(_Lenient):
    """Content block within a message. Unknown types pass through."""

    type: str

    # For text blocks
    text: str | None = None

    # For tool_use blocks
    id: str | None = None
    name: str | None = None
    input: dict[str, Any] | None = None

    # For tool_result blocks
    tool_use_id: str | None = None
    content: str | list[dict[str, Any]] | None = None
    is_error: bool | None = None

    # For image blocks
    source: ImageSource | None = None


class Message(_Lenient):
    """A message in the conversation."""

    role: Literal["user", "assistant"]
    content: str | list[ContentBlock]

    @field_validator("content", mode="before")
    @classmethod
    def validate_content(cls, v: Any) -> Any:
        # Empty arrays are treated as empty text
        if isinstance(v, list) and len(v) == 0:
            return ""
        return v


class ToolDefinition(_Lenient):
    """Definition of an available tool."""

    name: str
    description: str | None = None
    input_schema: dict[str, Any] = {}

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("tool name cannot be empty")
        return v


class SystemContentBlock(_Lenient):
    """Content block for system message (can be text with cache control)."""

    type: Literal["text"] = "text"
    text: str


class MessagesRequest(_Lenient):
    """Anthropic Messages API request body."""

    messages: list[Message]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: list[ToolDefinition] | None = None
    stream: bool = False
    system: str | list[SystemContentBlock] | None = None

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[Message]) -> list[Message]:
        if not v:
            raise ValueError("messages list cannot be empty")
        return v

    @field_validator("max_tokens")
    @classmethod
    def validate_max_tokens(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("max_tokens must be positive")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v


# ---------------------------------------------------------------------------
# OpenAI Chat Completions
# ---------------------------------------------------------------------------


class FunctionDefinition(_Lenient):
    name: str
    description: str | None = None
    parameters: dict[str, Any] | None = None


class FunctionTool(_Lenient):
    type: Literal["function"] = "function"
    function: FunctionDefinition


class ChatMessage(_Lenient):
    """A chat message. Content may be a string, a list of parts or null."""

    role: Literal["system", "developer", "user", "assistant", "tool"]
    content: str | list[dict[str, Any]] | None = None
    tool_calls: list[dict[str, Any]] | None = None
    tool_call_id: str | None = None


class ChatCompletionRequest(_Lenient):
    """OpenAI Chat Completions request body."""

    messages: list[ChatMessage]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    tools: list[FunctionTool] | None = None
    stream: bool = False

    @field_validator("messages")
    @classmethod
    def validate_messages(cls, v: list[ChatMessage]) -> list[ChatMessage]:
        if not v:
            raise ValueError("messages list cannot be empty")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and (v < 0 or v > 2):
            raise ValueError("temperature must be between 0 and 2")
        return v


RequestShape = Literal["openai", "anthropic"]

_MODELS: dict[str, type[BaseModel]] = {
    "openai": ChatCompletionRequest,
    "anthropic": MessagesRequest,
}


def validate_request(body: Any, shape: RequestShape = "anthropic") -> list[str]:
    """Validate a request body.

    Args:
        body: The decoded JSON body.
        shape: Which API the body claims to follow.

    Returns:
        List of validation error messages (empty if valid)
    """
    if not isinstance(body, dict):
        return ["request body must be a JSON object"]

    try:
        _MODELS[shape].model_validate(body)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            errors.append(f"{location}: {error['msg']}" if location else error["msg"])
        return errors
    return []
