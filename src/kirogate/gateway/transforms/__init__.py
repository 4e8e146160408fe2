"""Protocol translators between the client APIs and Kiro.

Both directions are stateless except for the per-response stream writers,
which hold block and tool indices for one streamed reply.
"""

from .anthropic import AnthropicTransformer, ClaudeStreamAssembler
from .kiro import (
    inject_system_prompts,
    is_agentic_request,
    is_thinking_enabled,
    map_model_id,
    shorten_tool_name,
)
from .openai import OpenAIStreamWriter, OpenAITransformer
from .types import (
    EndOfStream,
    HistoryEntry,
    InferenceConfig,
    KiroImage,
    KiroPayload,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolResult,
    ToolSpec,
    ToolUse,
    UpstreamResult,
)
from .validation import ChatCompletionRequest, MessagesRequest, validate_request

__all__ = [
    # Transformers
    "AnthropicTransformer",
    "ClaudeStreamAssembler",
    "OpenAIStreamWriter",
    "OpenAITransformer",
    # Helpers
    "inject_system_prompts",
    "is_agentic_request",
    "is_thinking_enabled",
    "map_model_id",
    "shorten_tool_name",
    # Types
    "EndOfStream",
    "HistoryEntry",
    "InferenceConfig",
    "KiroImage",
    "KiroPayload",
    "StreamEvent",
    "TextDelta",
    "TokenUsage",
    "ToolResult",
    "ToolSpec",
    "ToolUse",
    "UpstreamResult",
    # Validation
    "ChatCompletionRequest",
    "MessagesRequest",
    "validate_request",
]
