"""Request tracing for the gateway.

Provides human-readable trace IDs, per-request log lines and optional debug
dumps of the inbound request, the upstream payload and the response.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def _words(text: str) -> str:
    words = text.split()[:3]
    return "_".join(w[:8] for w in words if w and not w.startswith("<"))[:20]


class RequestTracer:
    """Trace IDs and debug dumps for gateway requests.

    Debug files are saved to: {debug_dir}/{session}/{trace_id}/{name}.json

    Example:
        tracer = RequestTracer(debug_dir="/tmp/kirogate-debug")
        trace_id = tracer.generate_trace_id(body)
        tracer.save_debug(trace_id, "1_request.json", body)
    """

    def __init__(self, debug_dir: str | Path | None = None):
        self._request_counter = 0
        self._session_id: str | None = None
        self._debug_dir_config = debug_dir

    @property
    def debug_dir(self) -> Path | None:
        """Session folder under the configured directory, or None."""
        if not self._debug_dir_config:
            return None
        if self._session_id is None:
            self._session_id = time.strftime("%Y-%m-%d_%H-%M-%S")
        return Path(self._debug_dir_config) / self._session_id

    @debug_dir.setter
    def debug_dir(self, value: str | Path | None) -> None:
        self._debug_dir_config = value
        self._session_id = None

    def generate_trace_id(self, body: dict[str, Any]) -> str:
        """Trace ID with sequence number and a hint of the last user message.

        Format: {counter}_{hhmmss}_{num_messages}msgs_{context}
        Example: 00001_031333_2msgs_Please_write_a
        """
        self._request_counter += 1
        timestamp = time.strftime("%H%M%S")

        messages = body.get("messages") or []
        if not isinstance(messages, list):
            messages = []

        context = "empty"
        for message in reversed(messages):
            if not isinstance(message, dict) or message.get("role") != "user":
                continue
            content = message.get("content", "")
            if isinstance(content, str) and content.strip():
                context = _words(content)
                break
            if isinstance(content, list):
                texts = [
                    block.get("text", "")
                    for block in content
                    if isinstance(block, dict) and block.get("type") == "text"
                ]
                text = next((t for t in texts if t.strip()), "")
                if text:
                    context = _words(text)
                    break

        # Clean context for filesystem
        context = "".join(c if c.isalnum() or c == "_" else "" for c in context) or "request"
        return f"{self._request_counter:05d}_{timestamp}_{len(messages)}msgs_{context}"

    def save_debug(self, trace_id: str, filename: str, data: Any) -> None:
        """Save debug data to a JSON file if a debug directory is configured."""
        if not self.debug_dir:
            return

        try:
            trace_path = self.debug_dir / trace_id
            trace_path.mkdir(parents=True, exist_ok=True)
            filepath = trace_path / filename
            with open(filepath, "w") as f:
                json.dump(data, f, indent=2, default=str)
            logger.debug("[%s] Saved debug file: %s", trace_id, filepath)
        except OSError as e:
            logger.warning("[%s] Failed to save debug file %s: %s", trace_id, filename, e)

    def log_request(
        self,
        trace_id: str,
        path: str,
        model: str,
        credential: str | None,
        stream: bool,
    ) -> None:
        logger.info(
            "[%s] %s model=%s credential=%s stream=%s",
            trace_id,
            path,
            model,
            credential or "-",
            stream,
        )

    def log_response(
        self,
        trace_id: str,
        status_code: int,
        duration_s: float,
        tokens_in: int = 0,
        tokens_out: int = 0,
        error: str | None = None,
    ) -> None:
        """Log the outcome of a request.

        Args:
            trace_id: Trace ID for this request.
            status_code: HTTP status code sent (or that would have been sent
                for a failure reported in-band on a stream).
            duration_s: Request duration in seconds.
            tokens_in: Input tokens reported by the upstream.
            tokens_out: Output tokens reported by the upstream.
            error: Error message if the request failed.
        """
        if error:
            logger.warning(
                "[%s] request_failed: status=%d, error=%s (%.2fs)",
                trace_id,
                status_code,
                error[:200],
                duration_s,
            )
        else:
            logger.info(
                "[%s] request_complete: status=%d, tokens_in=%d, tokens_out=%d (%.2fs)",
                trace_id,
                status_code,
                tokens_in,
                tokens_out,
                duration_s,
            )
