"""Anthropic Messages API transformer.

Converts Messages requests into Kiro payloads and Kiro results back into
Messages responses, including the streaming SSE event sequence.

Anthropic API Reference:
- Request: POST /v1/messages with {messages, max_tokens, model, stream, tools, system}
- Response: {id, type, role, content, model, stop_reason, usage}
- Streaming: SSE events (message_start, content_block_start/delta/stop, message_delta, message_stop)
"""

import json
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
    normalize_image_format,
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
    TokenUsage,
    ToolResult,
    ToolUse,
    UpstreamResult,
)


def _generate_message_id() -> str:
    """Generate a unique message ID in Anthropic format."""
    return f"msg_{uuid.uuid4()}"


def _image_from_source(source: dict[str, Any]) -> KiroImage | None:
    if source.get("type") == "url":
        return parse_image_url(source.get("url") or "")
    data = source.get("data")
    if not data:
        return None
    media_type = source.get("media_type") or "image/png"
    return KiroImage(format=normalize_image_format(media_type.split("/")[-1]), data=data)


def _tool_result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "".join(block.get("text", "") for block in content if isinstance(block, dict))
    return ""


@dataclass
class AnthropicTransformer:
    """Transforms Anthropic Messages requests to and from Kiro."""

    def to_kiro(
        self,
        body: dict[str, Any],
        profile_arn: str | None = None,
        thinking: bool = False,
        now: datetime | None = None,
    ) -> KiroPayload:
        """Convert a Messages request into a Kiro payload.

        Args:
            body: Validated Anthropic request body.
            profile_arn: Profile ARN of the credential that will send it.
            thinking: Add the thinking-mode marker.
            now: Clock override for the timestamp preambles.
        """
        model = body.get("model") or ""

        # Handle system message - Anthropic sends it separately
        system = body.get("system")
        if isinstance(system, list):
            system = "\n".join(
                block.get("text", "") for block in system if isinstance(block, dict)
            )

        messages = body.get("messages", [])
        history: list[HistoryEntry] = []
        tool_results: list[ToolResult] = []
        images: list[KiroImage] = []
        current = ""

        for i, message in enumerate(messages):
            is_last = i == len(messages) - 1
            text, blocks_images, tool_uses, results = self._process_content(message.get("content"))

            if message.get("role") == "user":
                tool_results.extend(results)
                if is_last:
                    current = text
                    images.extend(blocks_images)
                else:
                    history.append(HistoryEntry(role="user", content=text or CONTINUE_PLACEHOLDER))
            elif message.get("role") == "assistant":
                history.append(HistoryEntry(role="assistant", content=text, tool_uses=tuple(tool_uses)))

        if not current and tool_results:
            current = TOOL_RESULTS_PLACEHOLDER

        tools = tuple(
            build_tool_spec(tool["name"], tool.get("description"), tool.get("input_schema"))
            for tool in body.get("tools") or []
            if tool.get("name")
        )
        content = wrap_system_prompt(system or "", current, now)
        content = inject_system_prompts(
            content,
            agentic=is_agentic_request(model, body.get("tools")),
            thinking=thinking,
            now=now,
        )

        return KiroPayload(
            content=content,
            model_id=map_model_id(model),
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

    def _process_content(
        self, content: Any
    ) -> tuple[str, list[KiroImage], list[ToolUse], list[ToolResult]]:
        """Split message content into text, images, tool calls and tool results.

        Unknown block types are silently skipped.
        """
        if isinstance(content, str):
            return content, [], [], []

        text_parts: list[str] = []
        images: list[KiroImage] = []
        tool_uses: list[ToolUse] = []
        results: list[ToolResult] = []

        for block in content or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")

            if block_type == "text" and block.get("text"):
                text_parts.append(block["text"])

            elif block_type == "image" and isinstance(block.get("source"), dict):
                image = _image_from_source(block["source"])
                if image:
                    images.append(image)

            elif block_type == "tool_use" and block.get("id") and block.get("name"):
                tool_uses.append(
                    ToolUse(tool_use_id=block["id"], name=block["name"], input=block.get("input") or {})
                )

            elif block_type == "tool_result" and block.get("tool_use_id"):
                results.append(
                    ToolResult(
                        tool_use_id=block["tool_use_id"],
                        text=_tool_result_text(block.get("content")),
                        status="error" if block.get("is_error") else "success",
                    )
                )

        return "".join(text_parts), images, tool_uses, results

    def from_result(self, result: UpstreamResult, model: str) -> dict[str, Any]:
        """Build a Messages response from a buffered upstream result."""
        content: list[dict[str, Any]] = []
        if result.text:
            content.append({"type": "text", "text": result.text})
        for tool_use in result.tool_uses:
            content.append(
                {
                    "type": "tool_use",
                    "id": tool_use.tool_use_id,
                    "name": tool_use.name,
                    "input": tool_use.input,
                }
            )

        return {
            "id": _generate_message_id(),
            "type": "message",
            "role": "assistant",
            "content": content,
            "model": model,
            "stop_reason": "tool_use" if result.tool_uses else "end_turn",
            "stop_sequence": None,
            "usage": {
                "input_tokens": result.usage.input_tokens,
                "output_tokens": result.usage.output_tokens,
            },
        }


@dataclass
class ClaudeStreamAssembler:
    """Block state machine producing Anthropic SSE events for one response.

    Order: message_start, then text and tool_use blocks, then message_delta
    and message_stop. An open text block is closed before a tool block
    starts; block indices only ever increase.
    """

    model: str
    message_id: str = field(default_factory=_generate_message_id)
    usage: TokenUsage = field(default_factory=TokenUsage)
    _index: int = 0
    _text_open: bool = False
    _used_tools: bool = False

    def start(self) -> bytes:
        return self._format_sse_event(
            "message_start",
            {
                "type": "message_start",
                "message": {
                    "id": self.message_id,
                    "type": "message",
                    "role": "assistant",
                    "content": [],
                    "model": self.model,
                    "stop_reason": None,
                    "stop_sequence": None,
                    "usage": {"input_tokens": 0, "output_tokens": 0},
                },
            },
        )

    def feed(self, event: StreamEvent) -> bytes:
        if isinstance(event, TextDelta):
            return self._text(event.text)
        if isinstance(event, ToolUse):
            return self._tool(event)
        if isinstance(event, TokenUsage):
            self.usage = event
        return b""

    def finish(self) -> bytes:
        out = self._close_text()
        out += self._format_sse_event(
            "message_delta",
            {
                "type": "message_delta",
                "delta": {
                    "stop_reason": "tool_use" if self._used_tools else "end_turn",
                    "stop_sequence": None,
                },
                "usage": {"output_tokens": self.usage.output_tokens},
            },
        )
        out += self._format_sse_event("message_stop", {"type": "message_stop"})
        return out

    def error(self, error: GatewayError) -> bytes:
        return self._format_sse_event(
            "error",
            {"type": "error", "error": {"type": error.error_type, "message": str(error)}},
        )

    def _text(self, text: str) -> bytes:
        if not text:
            return b""
        out = b""
        if not self._text_open:
            out += self._format_sse_event(
                "content_block_start",
                {
                    "type": "content_block_start",
                    "index": self._index,
                    "content_block": {"type": "text", "text": ""},
                },
            )
            self._text_open = True
        out += self._format_sse_event(
            "content_block_delta",
            {
                "type": "content_block_delta",
                "index": self._index,
                "delta": {"type": "text_delta", "text": text},
            },
        )
        return out

    def _tool(self, tool_use: ToolUse) -> bytes:
        out = self._close_text()
        out += self._format_sse_event(
            "content_block_start",
            {
                "type": "content_block_start",
                "index": self._index,
                "content_block": {
                    "type": "tool_use",
                    "id": tool_use.tool_use_id,
                    "name": tool_use.name,
                    "input": {},
                },
            },
        )
        out += self._format_sse_event(
            "content_block_delta",
            {
                "type": "content_block_delta",
                "index": self._index,
                "delta": {"type": "input_json_delta", "partial_json": json.dumps(tool_use.input)},
            },
        )
        out += self._stop_block()
        self._used_tools = True
        return out

    def _close_text(self) -> bytes:
        if not self._text_open:
            return b""
        self._text_open = False
        return self._stop_block()

    def _stop_block(self) -> bytes:
        out = self._format_sse_event(
            "content_block_stop", {"type": "content_block_stop", "index": self._index}
        )
        self._index += 1
        return out

    def _format_sse_event(self, event_type: str, data: dict[str, Any]) -> bytes:
        json_data = json.dumps(data, separators=(",", ":"))
        return f"event: {event_type}\ndata: {json_data}\n\n".encode("utf-8")
