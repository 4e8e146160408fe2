"""Types for the Kiro conversation payload and its event stream.

The payload types describe one upstream "conversation turn". The stream
event types are what the frame decoder yields; they are ephemeral and never
persisted.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Union

ToolResultStatus = Literal["success", "error"]


@dataclass(frozen=True)
class KiroImage:
    """An inline image attached to a user message."""

    format: str
    data: str  # base64

    def to_dict(self) -> dict[str, Any]:
        return {"format": self.format, "source": {"bytes": self.data}}


@dataclass(frozen=True)
class ToolSpec:
    """Definition of a tool the model may call."""

    name: str
    description: str
    input_schema: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "toolSpecification": {
                "name": self.name,
                "description": self.description,
                "inputSchema": {"json": self.input_schema},
            }
        }


@dataclass(frozen=True)
class ToolResult:
    """Result of a tool call, supplied by the client."""

    tool_use_id: str
    text: str
    status: ToolResultStatus = "success"


@dataclass(frozen=True)
class HistoryEntry:
    """One prior turn of the conversation."""

    role: Literal["user", "assistant"]
    content: str
    tool_uses: tuple[ToolUse, ...] = ()


@dataclass(frozen=True)
class InferenceConfig:
    """Optional sampling parameters."""

    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.max_tokens:
            result["maxTokens"] = self.max_tokens
        if self.temperature is not None:
            result["temperature"] = self.temperature
        if self.top_p is not None:
            result["topP"] = self.top_p
        return result


@dataclass
class KiroPayload:
    """Upstream request body for a single logical request.

    Built once by a translator. ``origin`` is the only field the client
    rewrites between endpoint attempts.
    """

    content: str
    model_id: str
    origin: str = "AI_EDITOR"
    conversation_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    history: tuple[HistoryEntry, ...] = ()
    images: tuple[KiroImage, ...] = ()
    tools: tuple[ToolSpec, ...] = ()
    tool_results: tuple[ToolResult, ...] = ()
    profile_arn: str | None = None
    inference: InferenceConfig = field(default_factory=InferenceConfig)

    def render_content(self) -> str:
        """Final message text.

        The upstream ignores native history and toolResults fields, so both
        are rendered as text around the current message.
        """
        return _format_history(self.history) + self.content + _format_tool_results(self.tool_results)

    def to_dict(self) -> dict[str, Any]:
        user_input: dict[str, Any] = {
            "content": self.render_content(),
            "modelId": self.model_id,
            "origin": self.origin,
        }
        if self.images:
            user_input["images"] = [image.to_dict() for image in self.images]
        if self.tools:
            user_input["userInputMessageContext"] = {
                "tools": [tool.to_dict() for tool in self.tools]
            }

        payload: dict[str, Any] = {
            "conversationState": {
                "chatTriggerType": "MANUAL",
                "conversationId": self.conversation_id,
                "currentMessage": {"userInputMessage": user_input},
            }
        }
        if self.profile_arn:
            payload["profileArn"] = self.profile_arn
        inference = self.inference.to_dict()
        if inference:
            payload["inferenceConfig"] = inference
        return payload


def _format_history(history: tuple[HistoryEntry, ...]) -> str:
    if not history:
        return ""
    lines = ["\n\n--- CONVERSATION HISTORY ---\n"]
    for entry in history:
        if entry.role == "user":
            lines.append(f"[User]: {entry.content}\n\n")
            continue
        lines.append(f"[Assistant]: {entry.content}\n")
        for tool_use in entry.tool_uses:
            lines.append(f"  [Tool Call: {tool_use.name}] (id: {tool_use.tool_use_id})\n")
        lines.append("\n")
    lines.append("--- END HISTORY ---\n")
    return "".join(lines)


def _format_tool_results(results: tuple[ToolResult, ...]) -> str:
    if not results:
        return ""
    lines = ["\n\n--- TOOL RESULTS ---\n"]
    for result in results:
        lines.append(
            f"[Tool Result for {result.tool_use_id}] (status: {result.status}):\n{result.text}\n\n"
        )
    lines.append("--- END TOOL RESULTS ---\n")
    return "".join(lines)


# ---------------------------------------------------------------------------
# Stream events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolUse:
    """A completed tool invocation."""

    tool_use_id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TokenUsage:
    """Token usage statistics."""

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class EndOfStream:
    """The upstream signalled the end of the message."""


StreamEvent = Union[TextDelta, ToolUse, TokenUsage, EndOfStream]


@dataclass(frozen=True)
class UpstreamResult:
    """Whole response collected from a stream."""

    text: str
    tool_uses: tuple[ToolUse, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)
    endpoint: str | None = None
    # Endpoints that answered 429 before one served the call
    quota_endpoints: tuple[str, ...] = ()
