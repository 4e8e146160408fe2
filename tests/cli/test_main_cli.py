"""Tests for the kirogate command line."""

from __future__ import annotations

import json
import re
import sys

import pytest
from aioresponses import aioresponses

from kirogate.frontends.cli.main import main
from kirogate.frontends.cli.output import event_to_dict, format_event
from kirogate.gateway.transforms.types import EndOfStream, TextDelta, TokenUsage, ToolUse

MODELS_PATTERN = re.compile(r"^https://codewhisperer\.us-east-1\.amazonaws\.com/ListAvailableModels.*$")


def run_cli(monkeypatch, *args: str) -> int:
    """Run the CLI with ``args`` and return its exit code."""
    monkeypatch.setattr(sys, "argv", ["kirogate", *args])
    with pytest.raises(SystemExit) as exc_info:
        main()
    return exc_info.value.code or 0


@pytest.fixture
def capture(tmp_path, text_stream):
    path = tmp_path / "capture.bin"
    path.write_bytes(text_stream("hi"))
    return path


@pytest.fixture
def accounts_file(tmp_path):
    path = tmp_path / "accounts.json"
    path.write_text(json.dumps([{"id": "a", "accessToken": "ta", "email": "a@example.com"}]))
    return path


class TestOutputHelpers:
    def test_event_to_dict(self):
        assert event_to_dict(TextDelta("x")) == {"type": "TextDelta", "text": "x"}
        assert event_to_dict(EndOfStream()) == {"type": "EndOfStream"}

    def test_format_event(self):
        assert format_event(TextDelta("x")) == "TEXT    'x'"
        assert format_event(TokenUsage(1, 2)) == "USAGE   in=1 out=2"
        assert format_event(ToolUse("t1", "read", {"a": 1})) == 'TOOL    read (t1) {"a": 1}'
        assert format_event(EndOfStream()) == "END"


class TestDecodeCommand:
    def test_json_output(self, monkeypatch, capsys, capture):
        assert run_cli(monkeypatch, "decode", str(capture), "--json") == 0

        events = json.loads(capsys.readouterr().out)
        assert events == [
            {"type": "TextDelta", "text": "hi"},
            {"type": "TokenUsage", "input_tokens": 5, "output_tokens": 7},
            {"type": "EndOfStream"},
        ]

    def test_text_output(self, monkeypatch, capsys, capture):
        assert run_cli(monkeypatch, "decode", str(capture)) == 0

        assert capsys.readouterr().out.splitlines() == ["TEXT    'hi'", "USAGE   in=5 out=7", "END"]

    def test_checksum_failure(self, monkeypatch, capsys, tmp_path, capture):
        corrupt = tmp_path / "corrupt.bin"
        data = capture.read_bytes()
        corrupt.write_bytes(data[:-1] + bytes([data[-1] ^ 0xFF]))

        assert run_cli(monkeypatch, "decode", str(corrupt), "--verify") == 1
        assert "StreamDecodeError" in capsys.readouterr().err


class TestModelsCommand:
    def test_json_output(self, monkeypatch, capsys, accounts_file):
        with aioresponses() as m:
            m.get(MODELS_PATTERN, payload={"models": [{"modelId": "claude-sonnet-4.5", "modelName": "Sonnet"}]})

            assert run_cli(monkeypatch, "models", "--accounts", str(accounts_file), "--json") == 0

        assert json.loads(capsys.readouterr().out) == [{"modelId": "claude-sonnet-4.5", "modelName": "Sonnet"}]

    def test_unknown_account(self, monkeypatch, capsys, accounts_file):
        assert run_cli(monkeypatch, "models", "--accounts", str(accounts_file), "--account", "zzz") == 1
        assert "Account not found: zzz" in capsys.readouterr().err


class TestServeCommand:
    def test_help_lists_options(self, monkeypatch, capsys):
        assert run_cli(monkeypatch, "serve", "--help") == 0

        out = capsys.readouterr().out
        assert "--accounts" in out
        assert "--preferred-endpoint" in out
