"""Output formatting utilities for CLI commands."""

from __future__ import annotations

import json
import sys
from dataclasses import asdict
from typing import Any, NoReturn

import rich_click as click
from rich.console import Console
from rich.table import Table

from kirogate.gateway.transforms.types import EndOfStream, StreamEvent, TextDelta, TokenUsage, ToolUse


def print_table(headers: list[str], rows: list[list[str]], title: str | None = None) -> None:
    """Print rows as a rich table.

    Args:
        headers: Column header strings
        rows: List of rows, each row is a list of cell values
        title: Optional table title
    """
    table = Table(title=title, header_style="bold")
    for header in headers:
        table.add_column(header)
    for row in rows:
        padded_row = list(row) + [""] * (len(headers) - len(row))
        table.add_row(*padded_row[: len(headers)])
    Console().print(table)


def output_json(data: Any, indent: int = 2) -> None:
    """Output data as formatted JSON."""
    click.echo(json.dumps(data, indent=indent))


def error_exit(message: str, code: int = 1) -> NoReturn:
    """Print error message and exit with code."""
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


def event_to_dict(event: StreamEvent) -> dict[str, Any]:
    """JSON form of a stream event, tagged with its type."""
    return {"type": type(event).__name__, **asdict(event)}


def format_event(event: StreamEvent) -> str:
    """One display line for a decoded stream event."""
    if isinstance(event, TextDelta):
        return f"TEXT    {event.text!r}"
    if isinstance(event, ToolUse):
        return f"TOOL    {event.name} ({event.tool_use_id}) {json.dumps(event.input)}"
    if isinstance(event, TokenUsage):
        return f"USAGE   in={event.input_tokens} out={event.output_tokens}"
    if isinstance(event, EndOfStream):
        return "END"
    return repr(event)
