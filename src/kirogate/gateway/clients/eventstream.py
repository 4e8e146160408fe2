"""Decoder for the upstream binary event stream.

Frame layout (all integers big-endian):
- 4 bytes: total frame length
- 4 bytes: headers length
- 4 bytes: prelude checksum
- headers (name-length, name, value-type, value)*
- JSON payload
- 4 bytes: message checksum

The decoder is a pure state machine: feed it byte chunks in whatever sizes
the transport delivers and it returns the events completed so far. It knows
nothing about HTTP; see ``decode_stream`` for the async adapter.
"""

from __future__ import annotations

import json
import logging
import struct
import zlib
from collections.abc import AsyncIterable, AsyncIterator
from dataclasses import dataclass
from typing import Any

from kirogate.gateway.errors import StreamDecodeError, error_from_stream_message
from kirogate.gateway.transforms.types import (
    EndOfStream,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolUse,
)

logger = logging.getLogger(__name__)

PRELUDE_LENGTH = 12
CHECKSUM_LENGTH = 4
MIN_FRAME_LENGTH = PRELUDE_LENGTH + CHECKSUM_LENGTH

HEADER_TYPE_BYTES = 6
HEADER_TYPE_STRING = 7
# Fixed-size header value types and their widths
HEADER_FIXED_SIZES = {0: 0, 1: 0, 2: 1, 3: 2, 4: 4, 5: 8, 8: 8, 9: 16}

TEXT_EVENT_TYPES = ("assistantResponseEvent", "codeEvent")
TOOL_EVENT_TYPES = ("toolUseEvent",)
USAGE_EVENT_TYPES = (
    "messageMetadataEvent",
    "metadataEvent",
    "usageEvent",
    "usage",
    "supplementaryWebLinksEvent",
)
STOP_EVENT_TYPES = ("messageStopEvent",)
INPUT_TOKEN_FIELDS = ("uncachedInputTokens", "cacheReadInputTokens", "cacheWriteInputTokens")


@dataclass
class Frame:
    """One decoded frame: string headers plus the raw payload window."""

    headers: dict[str, str]
    payload: bytes


def parse_headers(raw: bytes) -> dict[str, str]:
    """Parse the string-valued headers of a frame.

    Non-string values are skipped by size. Parsing stops quietly at the
    first truncated or unknown entry.
    """
    headers: dict[str, str] = {}
    offset = 0
    while offset < len(raw):
        name_len = raw[offset]
        offset += 1
        if offset + name_len > len(raw):
            break
        name = raw[offset : offset + name_len].decode("utf-8", errors="replace")
        offset += name_len
        if offset >= len(raw):
            break
        value_type = raw[offset]
        offset += 1

        if value_type in (HEADER_TYPE_BYTES, HEADER_TYPE_STRING):
            if offset + 2 > len(raw):
                break
            (value_len,) = struct.unpack(">H", raw[offset : offset + 2])
            offset += 2
            if offset + value_len > len(raw):
                break
            if value_type == HEADER_TYPE_STRING:
                headers[name] = raw[offset : offset + value_len].decode("utf-8", errors="replace")
            offset += value_len
        elif value_type in HEADER_FIXED_SIZES:
            offset += HEADER_FIXED_SIZES[value_type]
        else:
            break
    return headers


def encode_headers(headers: dict[str, str]) -> bytes:
    """Encode string headers in the frame header format."""
    parts = []
    for name, value in headers.items():
        name_bytes = name.encode("utf-8")
        value_bytes = value.encode("utf-8")
        parts.append(
            struct.pack(">B", len(name_bytes))
            + name_bytes
            + struct.pack(">BH", HEADER_TYPE_STRING, len(value_bytes))
            + value_bytes
        )
    return b"".join(parts)


def encode_frame(
    payload: dict[str, Any] | bytes,
    headers: dict[str, str] | bytes | None = None,
) -> bytes:
    """Build a complete frame with valid checksums.

    Used to replay captured events and in tests.
    """
    if isinstance(payload, dict):
        payload = json.dumps(payload).encode("utf-8")
    if headers is None:
        header_bytes = b""
    elif isinstance(headers, bytes):
        header_bytes = headers
    else:
        header_bytes = encode_headers(headers)

    total_length = PRELUDE_LENGTH + len(header_bytes) + len(payload) + CHECKSUM_LENGTH
    prelude = struct.pack(">II", total_length, len(header_bytes))
    prelude += struct.pack(">I", zlib.crc32(prelude))
    message = prelude + header_bytes + payload
    return message + struct.pack(">I", zlib.crc32(message))


@dataclass
class _PendingToolUse:
    tool_use_id: str
    name: str
    input_buffer: str = ""


class FrameDecoder:
    """Incremental decoder from raw bytes to stream events.

    One instance per upstream response. Not thread-safe and not reusable
    across connections.

    Args:
        verify_checksums: Validate prelude and message CRC32 values.
    """

    def __init__(self, verify_checksums: bool = False):
        self.verify_checksums = verify_checksums
        self.usage = TokenUsage()
        self.finished = False
        self._buffer = bytearray()
        self._tool: _PendingToolUse | None = None
        self._completed_tool_ids: set[str] = set()

    def feed(self, chunk: bytes) -> list[StreamEvent]:
        """Append a chunk and return every event it completed.

        Raises:
            StreamDecodeError: On corrupt framing or an in-band error frame.
            QuotaError, AuthError: On in-band error frames carrying those signals.
        """
        self._buffer.extend(chunk)
        events: list[StreamEvent] = []
        while not self.finished:
            frame = self._next_frame()
            if frame is None:
                break
            events.extend(self._handle_frame(frame))
        return events

    def finish(self) -> list[StreamEvent]:
        """Signal end of input; flushes any open tool use."""
        if self.finished:
            return []
        if self._buffer:
            logger.debug("Discarding %d trailing bytes of incomplete frame", len(self._buffer))
            self._buffer.clear()
        events = self._complete_tool()
        events.append(EndOfStream())
        self.finished = True
        return events

    def _next_frame(self) -> Frame | None:
        if len(self._buffer) < PRELUDE_LENGTH:
            return None

        total_length, headers_length = struct.unpack(">II", self._buffer[:8])
        if total_length < MIN_FRAME_LENGTH:
            raise StreamDecodeError(f"Invalid frame length {total_length}")
        if len(self._buffer) < total_length:
            return None

        frame_bytes = bytes(self._buffer[:total_length])
        del self._buffer[:total_length]

        if self.verify_checksums:
            self._check_crc(frame_bytes, total_length)

        payload_start = PRELUDE_LENGTH + headers_length
        payload_end = total_length - CHECKSUM_LENGTH
        headers = parse_headers(frame_bytes[PRELUDE_LENGTH : min(payload_start, payload_end)])
        # Inconsistent headers length leaves an empty or inverted window
        payload = frame_bytes[payload_start:payload_end] if payload_start < payload_end else b""
        return Frame(headers=headers, payload=payload)

    def _check_crc(self, frame_bytes: bytes, total_length: int) -> None:
        (prelude_crc,) = struct.unpack(">I", frame_bytes[8:12])
        if zlib.crc32(frame_bytes[:8]) != prelude_crc:
            raise StreamDecodeError("Prelude checksum mismatch")
        (message_crc,) = struct.unpack(">I", frame_bytes[total_length - CHECKSUM_LENGTH :])
        if zlib.crc32(frame_bytes[: total_length - CHECKSUM_LENGTH]) != message_crc:
            raise StreamDecodeError("Message checksum mismatch")

    def _handle_frame(self, frame: Frame) -> list[StreamEvent]:
        if not frame.payload:
            return []
        try:
            event = json.loads(frame.payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            # Partial or binary control frames are noise
            logger.debug("Skipping non-JSON frame payload (%d bytes)", len(frame.payload))
            return []
        if not isinstance(event, dict):
            return []

        event_type = frame.headers.get(":event-type", "")
        message_type = frame.headers.get(":message-type", "")
        return self._dispatch(event_type, message_type, event)

    def _dispatch(self, event_type: str, message_type: str, event: dict[str, Any]) -> list[StreamEvent]:
        if message_type in ("exception", "error") or "error" in event or "_type" in event:
            error = event.get("error")
            message = event.get("message") or (
                error.get("message") if isinstance(error, dict) else error
            )
            raise error_from_stream_message(str(message or "Unknown stream error"))

        events: list[StreamEvent] = []

        body = _event_body(event_type, event, TEXT_EVENT_TYPES)
        if body is not None:
            content = body.get("content")
            if content:
                events.append(TextDelta(content))

        body = _event_body(event_type, event, TOOL_EVENT_TYPES)
        if body is not None:
            events.extend(self._handle_tool_use(body))

        body = _event_body(event_type, event, USAGE_EVENT_TYPES)
        if body is not None:
            events.extend(self._handle_usage(body))

        if _event_body(event_type, event, STOP_EVENT_TYPES) is not None:
            events.extend(self._complete_tool())
            events.append(EndOfStream())
            self.finished = True
        elif event_type and event_type not in TEXT_EVENT_TYPES + TOOL_EVENT_TYPES:
            logger.debug("Event %s: %s", event_type, event)

        return events

    def _handle_tool_use(self, data: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        tool_use_id = data.get("toolUseId")
        name = data.get("name")
        raw_input = data.get("input")

        if tool_use_id and name:
            if self._tool is not None and self._tool.tool_use_id != tool_use_id:
                # A new tool started before the previous one sent stop
                events.extend(self._complete_tool())
            if self._tool is None and tool_use_id not in self._completed_tool_ids:
                self._tool = _PendingToolUse(tool_use_id=tool_use_id, name=name)

        if self._tool is not None:
            if isinstance(raw_input, str):
                self._tool.input_buffer += raw_input
            elif isinstance(raw_input, dict):
                self._tool.input_buffer = json.dumps(raw_input)

        if data.get("stop") is True:
            events.extend(self._complete_tool())
        return events

    def _complete_tool(self) -> list[StreamEvent]:
        tool = self._tool
        if tool is None:
            return []
        self._tool = None
        if tool.tool_use_id in self._completed_tool_ids:
            return []
        self._completed_tool_ids.add(tool.tool_use_id)

        tool_input: dict[str, Any] = {}
        if tool.input_buffer:
            try:
                parsed = json.loads(tool.input_buffer)
            except json.JSONDecodeError:
                logger.warning(
                    "Tool %s sent unparseable input (%d chars)", tool.name, len(tool.input_buffer)
                )
            else:
                if isinstance(parsed, dict):
                    tool_input = parsed
        return [ToolUse(tool_use_id=tool.tool_use_id, name=tool.name, input=tool_input)]

    def _handle_usage(self, data: dict[str, Any]) -> list[StreamEvent]:
        input_tokens = self.usage.input_tokens
        output_tokens = self.usage.output_tokens

        token_usage = data.get("tokenUsage")
        if isinstance(token_usage, dict):
            computed = sum(int(token_usage.get(key) or 0) for key in INPUT_TOKEN_FIELDS)
            if computed > 0:
                input_tokens = computed
            if token_usage.get("outputTokens"):
                output_tokens = int(token_usage["outputTokens"])
            total = token_usage.get("totalTokens")
            if total and input_tokens == 0 and output_tokens > 0:
                input_tokens = int(total) - output_tokens

        if data.get("inputTokens"):
            input_tokens = int(data["inputTokens"])
        if data.get("outputTokens"):
            output_tokens = int(data["outputTokens"])

        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        if usage == self.usage:
            return []
        self.usage = usage
        return [usage]


def _event_body(
    event_type: str, event: dict[str, Any], names: tuple[str, ...]
) -> dict[str, Any] | None:
    """Return the event body when the frame is one of ``names``.

    Matches on the ``:event-type`` header (the whole payload is the body) or
    on a wrapping key inside the payload.
    """
    for name in names:
        wrapped = event.get(name)
        if isinstance(wrapped, dict):
            return wrapped
    if event_type in names:
        return event
    return None


async def decode_stream(
    chunks: AsyncIterable[bytes],
    verify_checksums: bool = False,
) -> AsyncIterator[StreamEvent]:
    """Decode an async byte stream into events.

    The last event is always EndOfStream unless a decode error is raised.
    """
    decoder = FrameDecoder(verify_checksums=verify_checksums)
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.finished:
            return
    for event in decoder.finish():
        yield event
