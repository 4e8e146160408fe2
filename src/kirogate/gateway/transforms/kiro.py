"""Helpers shared by both client protocols when building a Kiro payload.

Model aliasing, prompt augmentation, tool name shortening and image
parsing. Everything here is a pure function of its inputs (plus the clock).
"""

import logging
import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from kirogate.gateway.transforms.types import KiroImage, ToolSpec

logger = logging.getLogger(__name__)

DEFAULT_MODEL_ID = "claude-sonnet-4.5"

# Checked in order; the first key contained in the lowercased name wins, so a
# key never follows a shorter key it contains
MODEL_ID_MAP: tuple[tuple[str, str], ...] = (
    # Claude 4.5
    ("claude-sonnet-4-5", "claude-sonnet-4.5"),
    ("claude-sonnet-4.5", "claude-sonnet-4.5"),
    ("claude-haiku-4-5", "claude-haiku-4.5"),
    ("claude-haiku-4.5", "claude-haiku-4.5"),
    ("claude-opus-4-5", "claude-opus-4.5"),
    ("claude-opus-4.5", "claude-opus-4.5"),
    # Claude 4
    ("claude-sonnet-4", "claude-sonnet-4"),
    # Claude 3.x
    ("claude-3-5-sonnet", "claude-sonnet-4.5"),
    ("claude-3-opus", "claude-sonnet-4.5"),
    ("claude-3-sonnet", "claude-sonnet-4"),
    ("claude-3-haiku", "claude-haiku-4.5"),
    # OpenAI names
    ("gpt-4", "claude-sonnet-4.5"),
    ("gpt-3.5-turbo", "claude-sonnet-4.5"),
)

# Static catalogue served on /v1/models
ADVERTISED_MODELS = (
    "claude-sonnet-4",
    "claude-3-5-sonnet",
    "gpt-4o",
    "gpt-4",
    "gpt-4-turbo",
    "gpt-3.5-turbo",
)

AGENTIC_SYSTEM_PROMPT = """# CRITICAL: CHUNKED WRITE PROTOCOL (MANDATORY)

You MUST follow these rules for ALL file operations. Violation causes server timeouts and task failure.

## ABSOLUTE LIMITS
- **MAXIMUM 350 LINES** per single write/edit operation - NO EXCEPTIONS
- **RECOMMENDED 300 LINES** or less for optimal performance
- **NEVER** write entire files in one operation if >300 lines

## MANDATORY CHUNKED WRITE STRATEGY

### For NEW FILES (>300 lines total):
1. FIRST: Write initial chunk (first 250-300 lines) using write_to_file/fsWrite
2. THEN: Append remaining content in 250-300 line chunks using file append operations
3. REPEAT: Continue appending until complete

### For EDITING EXISTING FILES:
1. Use surgical edits (apply_diff/targeted edits) - change ONLY what's needed
2. NEVER rewrite entire files - use incremental modifications
3. Split large refactors into multiple small, focused edits

REMEMBER: When in doubt, write LESS per operation. Multiple small operations > one large operation."""

THINKING_MODE_PROMPT = (
    "<thinking_mode>enabled</thinking_mode>\n<max_thinking_length>200000</max_thinking_length>"
)

TOOL_NAME_LIMIT = 64
CONTINUE_PLACEHOLDER = "Continue"
TOOL_RESULTS_PLACEHOLDER = "Tool results provided."

_DATA_URL_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.DOTALL)
_IMAGE_FORMATS = {"jpg": "jpeg", "jpeg": "jpeg", "png": "png", "gif": "gif", "webp": "webp"}


def map_model_id(model: str) -> str:
    """Map a client model name to an upstream model id.

    Case-insensitive substring match against the alias table; unknown names
    map to the default.
    """
    lowered = (model or "").lower()
    for key, value in MODEL_ID_MAP:
        if key in lowered:
            return value
    return DEFAULT_MODEL_ID


def is_agentic_request(model: str, tools: list[Any] | None = None) -> bool:
    return "agentic" in (model or "").lower() or bool(tools)


def is_thinking_enabled(headers: Mapping[str, str] | None) -> bool:
    """True when the anthropic-beta header mentions thinking."""
    if not headers:
        return False
    beta = headers.get("anthropic-beta") or headers.get("Anthropic-Beta") or ""
    return "thinking" in beta.lower()


def now_iso(now: datetime | None = None) -> str:
    """UTC timestamp in the millisecond ISO form used in prompts."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def inject_system_prompts(
    content: str,
    agentic: bool,
    thinking: bool,
    now: datetime | None = None,
) -> str:
    """Augment outgoing text.

    Final order: timestamp, thinking marker, content, agentic instruction.
    """
    result = content
    if thinking:
        result = THINKING_MODE_PROMPT + "\n\n" + result
    if agentic:
        result = result + "\n\n" + AGENTIC_SYSTEM_PROMPT
    return f"Current time: {now_iso(now)}\n\n{result}"


def wrap_system_prompt(system_prompt: str, current: str, now: datetime | None = None) -> str:
    """Prefix the current message with the timestamped system prompt block."""
    system = f"[Context: Current time is {now_iso(now)}]\n\n{system_prompt}"
    return (
        f"--- SYSTEM PROMPT ---\n{system}\n--- END SYSTEM PROMPT ---\n\n"
        f"{current or CONTINUE_PLACEHOLDER}"
    )


def shorten_tool_name(name: str) -> str:
    """Fit a tool name into the upstream's 64 character limit.

    MCP style names keep their prefix and last segment:
    ``mcp__server__tool`` becomes ``mcp__tool``.
    """
    if len(name) <= TOOL_NAME_LIMIT:
        return name
    if name.startswith("mcp__"):
        last = name.rfind("__")
        if last > 5:
            return ("mcp__" + name[last + 2 :])[:TOOL_NAME_LIMIT]
    return name[:TOOL_NAME_LIMIT]


def build_tool_spec(name: str, description: str | None, schema: Any) -> ToolSpec:
    return ToolSpec(
        name=shorten_tool_name(name),
        description=description or f"Tool: {name}",
        input_schema=schema if isinstance(schema, dict) else {},
    )


def normalize_image_format(fmt: str) -> str:
    return _IMAGE_FORMATS.get(fmt.lower(), "png")


def parse_image_url(url: str) -> KiroImage | None:
    """Inline image from a base64 data URL.

    Remote http(s) URLs are not fetched and yield None.
    """
    if url.startswith("data:"):
        match = _DATA_URL_RE.match(url)
        if match:
            return KiroImage(format=normalize_image_format(match.group(1)), data=match.group(2))
        return None
    if url.startswith(("http://", "https://")):
        logger.info("Skipping remote image URL: %s...", url[:50])
    return None
