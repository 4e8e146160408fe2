"""Tests for OpenAITransformer and OpenAIStreamWriter."""

import json
from datetime import datetime, timezone

from kirogate.gateway.errors import AuthError
from kirogate.gateway.transforms.openai import OpenAIStreamWriter, OpenAITransformer
from kirogate.gateway.transforms.types import EndOfStream, TextDelta, TokenUsage, ToolUse, UpstreamResult

NOW = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def parse_chunks(data: bytes) -> list:
    """Decode ``data:`` lines; the terminator comes back as the string [DONE]."""
    chunks = []
    for block in data.decode("utf-8").strip().split("\n\n"):
        assert block.startswith("data: ")
        value = block[len("data: ") :]
        chunks.append(value if value == "[DONE]" else json.loads(value))
    return chunks


class TestOpenAITransformerToKiro:
    """Tests for converting chat requests to Kiro payloads."""

    def test_simple_message(self):
        payload = OpenAITransformer().to_kiro(
            {"model": "gpt-4o", "messages": [{"role": "user", "content": "Hello!"}], "max_tokens": 64},
            now=NOW,
        )

        assert payload.model_id == "claude-sonnet-4.5"
        assert payload.content.endswith("Hello!")
        assert payload.inference.max_tokens == 64
        assert payload.to_dict()["conversationState"]["chatTriggerType"] == "MANUAL"

    def test_system_messages_joined(self):
        payload = OpenAITransformer().to_kiro(
            {
                "messages": [
                    {"role": "system", "content": "You are helpful."},
                    {"role": "system", "content": [{"type": "text", "text": "Be brief."}]},
                    {"role": "user", "content": "Hi"},
                ]
            },
            now=NOW,
        )

        assert "You are helpful.\nBe brief.\n--- END SYSTEM PROMPT ---\n\nHi" in payload.content
        assert payload.history == ()

    def test_tool_round_trip_history(self):
        """Assistant tool calls go to history and tool messages become results."""
        payload = OpenAITransformer().to_kiro(
            {
                "messages": [
                    {"role": "user", "content": "Weather?"},
                    {
                        "role": "assistant",
                        "content": None,
                        "tool_calls": [
                            {
                                "id": "call_1",
                                "type": "function",
                                "function": {"name": "weather", "arguments": '{"city": "Oslo"}'},
                            }
                        ],
                    },
                    {"role": "tool", "tool_call_id": "call_1", "content": "rainy"},
                ],
                "tools": [
                    {
                        "type": "function",
                        "function": {"name": "weather", "parameters": {"type": "object"}},
                    }
                ],
            },
            now=NOW,
        )

        assert payload.history[1].tool_uses == (
            ToolUse(tool_use_id="call_1", name="weather", input={"city": "Oslo"}),
        )
        assert payload.tool_results[0].tool_use_id == "call_1"
        assert payload.tool_results[0].text == "rainy"
        assert "Tool results provided." in payload.content
        assert payload.tools[0].name == "weather"
        assert payload.tools[0].description == "Tool: weather"

    def test_bad_arguments_become_empty(self):
        payload = OpenAITransformer().to_kiro(
            {
                "messages": [
                    {
                        "role": "assistant",
                        "tool_calls": [{"id": "c", "function": {"name": "f", "arguments": "{oops"}}],
                    },
                    {"role": "user", "content": "next"},
                ]
            },
            now=NOW,
        )

        assert payload.history[0].tool_uses[0].input == {}

    def test_image_parts(self):
        payload = OpenAITransformer().to_kiro(
            {
                "messages": [
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": "Look"},
                            {"type": "image_url", "image_url": {"url": "data:image/png;base64,QUJD"}},
                            {"type": "image_url", "image_url": {"url": "https://example.com/x.png"}},
                        ],
                    }
                ]
            },
            now=NOW,
        )

        assert [(image.format, image.data) for image in payload.images] == [("png", "QUJD")]

    def test_origin_is_rewritable(self):
        payload = OpenAITransformer().to_kiro({"messages": [{"role": "user", "content": "x"}]}, now=NOW)

        payload.origin = "CLI"

        assert payload.to_dict()["conversationState"]["currentMessage"]["userInputMessage"]["origin"] == "CLI"


class TestOpenAITransformerFromResult:
    def test_text_completion(self):
        response = OpenAITransformer().from_result(
            UpstreamResult(text="Hello", usage=TokenUsage(5, 7)), "gpt-4o"
        )

        assert response["object"] == "chat.completion"
        assert response["model"] == "gpt-4o"
        assert response["choices"][0]["message"] == {"role": "assistant", "content": "Hello"}
        assert response["choices"][0]["finish_reason"] == "stop"
        assert response["usage"] == {"prompt_tokens": 5, "completion_tokens": 7, "total_tokens": 12}

    def test_tool_calls(self):
        result = UpstreamResult(text="", tool_uses=(ToolUse("call_1", "weather", {"city": "Oslo"}),))

        response = OpenAITransformer().from_result(result, "gpt-4o")

        message = response["choices"][0]["message"]
        assert message["content"] is None
        assert message["tool_calls"][0]["function"] == {"name": "weather", "arguments": '{"city": "Oslo"}'}
        assert response["choices"][0]["finish_reason"] == "tool_calls"


class TestOpenAIStreamWriter:
    """Tests for streamed chat completion chunks."""

    def test_text_stream(self):
        writer = OpenAIStreamWriter(model="gpt-4o")
        out = writer.start()
        for event in (TextDelta("Hel"), TextDelta("lo"), TokenUsage(5, 7), EndOfStream()):
            out += writer.feed(event)
        out += writer.finish()

        chunks = parse_chunks(out)
        assert chunks[-1] == "[DONE]"
        assert chunks[0]["choices"][0]["delta"] == {"role": "assistant"}
        assert [c["choices"][0]["delta"].get("content") for c in chunks[1:3]] == ["Hel", "lo"]
        assert chunks[-2]["choices"][0]["finish_reason"] == "stop"
        assert len({c["id"] for c in chunks[:-1]}) == 1

    def test_tool_calls_are_indexed(self):
        writer = OpenAIStreamWriter(model="gpt-4o")
        out = writer.feed(ToolUse("a", "one", {})) + writer.feed(ToolUse("b", "two", {}))
        out += writer.finish()

        chunks = parse_chunks(out)
        calls = [c["choices"][0]["delta"]["tool_calls"][0] for c in chunks[:2]]
        assert [(call["index"], call["id"]) for call in calls] == [(0, "a"), (1, "b")]
        assert chunks[2]["choices"][0]["finish_reason"] == "tool_calls"

    def test_error_chunk(self):
        [chunk] = parse_chunks(OpenAIStreamWriter(model="m").error(AuthError("bad token")))

        assert chunk == {"error": {"message": "bad token", "type": "authentication_error", "code": 401}}
