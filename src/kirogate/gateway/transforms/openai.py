"""OpenAI Chat Completions transformer.

Converts OpenAI chat requests into Kiro payloads and Kiro results back into
OpenAI completion objects and streaming chunks.

OpenAI API Reference:
- Request: POST /v1/chat/completions with {model, messages, tools, stream, max_tokens, temperature}
- Messages: [{role, content, tool_calls?, tool_call_id?}]
- Streaming: SSE with data: {"choices": [{"delta": {...}}]}, ended by data: [DONE]
"""

import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from kirogate.gateway.errors import GatewayError
from kirogate.gateway.transforms.kiro import (
    CONTINUE_PLACEHOLDER,
    TOOL_RESULTS_PLACEHOLDER,
    build_tool_spec,
    inject_system_prompts,
    is_agentic_request,
    map_model_id,
    parse_image_url,
    wrap_system_prompt,
)
from kirogate.gateway.transforms.types import (
    HistoryEntry,
    InferenceConfig,
    KiroImage,
    KiroPayload,
    StreamEvent,
    TextDelta,
    ToolResult,
    ToolSpec,
    ToolUse,
    UpstreamResult,
)


def _text_of(content: Any) -> tuple[str, list[KiroImage]]:
    """Flatten OpenAI message content into text and inline images."""
    if isinstance(content, str):
        return content, []
    text = ""
    images: list[KiroImage] = []
    if isinstance(content, list):
        for part in content:
            if not isinstance(part, dict):
                continue
            if part.get("type") == "text" and part.get("text"):
                text += part["text"]
            elif part.get("type") == "image_url":
                url = (part.get("image_url") or {}).get("url")
                image = parse_image_url(url) if url else None
                if image:
                    images.append(image)
    return text, images


def _parse_arguments(arguments: Any) -> dict[str, Any]:
    if isinstance(arguments, dict):
        return arguments
    try:
        parsed = json.loads(arguments or "{}")
    except (TypeError, json.JSONDecodeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


@dataclass
class OpenAITransformer:
    """Transforms OpenAI chat requests to and from Kiro."""

    def to_kiro(
        self,
        body: dict[str, Any],
        profile_arn: str | None = None,
        thinking: bool = False,
        now: datetime | None = None,
    ) -> KiroPayload:
        """Convert a chat completion request into a Kiro payload.

        Args:
            body: Validated OpenAI request body.
            profile_arn: Profile ARN of the credential that will send it.
            thinking: Add the thinking-mode marker.
            now: Clock override for the timestamp preambles.
        """
        model = body.get("model") or ""
        model_id = map_model_id(model)

        system_parts: list[str] = []
        conversation: list[dict[str, Any]] = []
        for message in body.get("messages", []):
            if message.get("role") == "system":
                text, _ = _text_of(message.get("content"))
                if text:
                    system_parts.append(text)
            else:
                conversation.append(message)

        history: list[HistoryEntry] = []
        tool_results: list[ToolResult] = []
        images: list[KiroImage] = []
        current = ""

        for i, message in enumerate(conversation):
            role = message.get("role")
            is_last = i == len(conversation) - 1

            if role == "user":
                text, user_images = _text_of(message.get("content"))
                if is_last:
                    current = text
                    images.extend(user_images)
                else:
                    history.append(HistoryEntry(role="user", content=text or CONTINUE_PLACEHOLDER))

            elif role == "assistant":
                content = message.get("content")
                tool_uses = tuple(
                    ToolUse(
                        tool_use_id=call.get("id", ""),
                        name=(call.get("function") or {}).get("name", ""),
                        input=_parse_arguments((call.get("function") or {}).get("arguments")),
                    )
                    for call in message.get("tool_calls") or []
                    if call.get("type", "function") == "function"
                )
                history.append(
                    HistoryEntry(
                        role="assistant",
                        content=content if isinstance(content, str) else "",
                        tool_uses=tool_uses,
                    )
                )

            elif role == "tool" and message.get("tool_call_id"):
                content = message.get("content")
                if isinstance(content, str):
                    text = content
                elif isinstance(content, list):
                    text, _ = _text_of(content)
                else:
                    text = json.dumps(content)
                tool_results.append(ToolResult(tool_use_id=message["tool_call_id"], text=text))

        if not current and tool_results:
            current = TOOL_RESULTS_PLACEHOLDER

        tools = self._convert_tools(body.get("tools"))
        content = wrap_system_prompt("\n".join(system_parts), current, now)
        content = inject_system_prompts(
            content,
            agentic=is_agentic_request(model, body.get("tools")),
            thinking=thinking,
            now=now,
        )

        return KiroPayload(
            content=content,
            model_id=model_id,
            history=tuple(history),
            images=tuple(images),
            tools=tools,
            tool_results=tuple(tool_results),
            profile_arn=profile_arn,
            inference=InferenceConfig(
                max_tokens=body.get("max_tokens"),
                temperature=body.get("temperature"),
                top_p=body.get("top_p"),
            ),
        )

    def _convert_tools(self, tools: list[dict[str, Any]] | None) -> tuple[ToolSpec, ...]:
        specs = []
        for tool in tools or []:
            function = tool.get("function") or {}
            if not function.get("name"):
                continue
            specs.append(
                build_tool_spec(function["name"], function.get("description"), function.get("parameters"))
            )
        return tuple(specs)

    def from_result(self, result: UpstreamResult, model: str) -> dict[str, Any]:
        """Build a chat.completion object from a buffered upstream result."""
        message: dict[str, Any] = {"role": "assistant", "content": result.text}
        if result.tool_uses:
            message["content"] = None
            message["tool_calls"] = [_tool_call(tool_use) for tool_use in result.tool_uses]

        return {
            "id": f"chatcmpl-{uuid.uuid4()}",
            "object": "chat.completion",
            "created": int(time.time()),
            "model": model,
            "choices": [
                {
                    "index": 0,
                    "message": message,
                    "finish_reason": "tool_calls" if result.tool_uses else "stop",
                }
            ],
            "usage": {
                "prompt_tokens": result.usage.input_tokens,
                "completion_tokens": result.usage.output_tokens,
                "total_tokens": result.usage.total_tokens,
            },
        }


def _tool_call(tool_use: ToolUse) -> dict[str, Any]:
    return {
        "id": tool_use.tool_use_id,
        "type": "function",
        "function": {"name": tool_use.name, "arguments": json.dumps(tool_use.input)},
    }


@dataclass
class OpenAIStreamWriter:
    """Turns stream events into OpenAI SSE chunks for one response."""

    model: str
    stream_id: str = field(default_factory=lambda: f"chatcmpl-{uuid.uuid4()}")
    _tool_index: int = 0

    @property
    def used_tools(self) -> bool:
        return self._tool_index > 0

    def start(self) -> bytes:
        return self._chunk({"role": "assistant"})

    def feed(self, event: StreamEvent) -> bytes:
        if isinstance(event, TextDelta):
            return self._chunk({"content": event.text})
        if isinstance(event, ToolUse):
            call = {"index": self._tool_index, **_tool_call(event)}
            self._tool_index += 1
            return self._chunk({"tool_calls": [call]})
        return b""

    def finish(self) -> bytes:
        finish_reason = "tool_calls" if self.used_tools else "stop"
        return self._chunk({}, finish_reason) + b"data: [DONE]\n\n"

    def error(self, error: GatewayError) -> bytes:
        data = {"error": {"message": str(error), "type": error.error_type, "code": error.status_code}}
        return _format_data(data)

    def _chunk(self, delta: dict[str, Any], finish_reason: str | None = None) -> bytes:
        return _format_data(
            {
                "id": self.stream_id,
                "object": "chat.completion.chunk",
                "created": int(time.time()),
                "model": self.model,
                "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}],
            }
        )


def _format_data(data: dict[str, Any]) -> bytes:
    return f"data: {json.dumps(data, separators=(',', ':'))}\n\n".encode("utf-8")
