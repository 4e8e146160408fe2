"""Client for the Kiro conversation endpoints.

Uses aiohttp.ClientSession, like the rest of the gateway.

Features:
- Endpoint fallback: a 429 on one endpoint moves on to the next
- Streaming through an async iterator or through callbacks
- Buffered calls built on the same stream
- Cooperative cancellation via an asyncio.Event raced against I/O
"""

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from typing import Any, TypeVar

import aiohttp

from kirogate.gateway.clients.endpoints import MODELS_URL, Endpoint, ordered_endpoints
from kirogate.gateway.clients.eventstream import decode_stream
from kirogate.gateway.errors import (
    AuthError,
    GatewayError,
    QuotaError,
    RequestCancelledError,
    UpstreamAPIError,
    UpstreamConnectionError,
    UpstreamServerError,
)
from kirogate.gateway.pool import Credential
from kirogate.gateway.transforms.types import (
    EndOfStream,
    KiroPayload,
    StreamEvent,
    TextDelta,
    TokenUsage,
    ToolUse,
    UpstreamResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Social login (IDE) identity
KIRO_USER_AGENT = (
    "aws-sdk-js/1.0.18 ua/2.1 os/windows lang/js md/nodejs#20.16.0 "
    "api/codewhispererstreaming#1.0.18 m/E KiroIDE-0.6.18"
)
KIRO_AMZ_USER_AGENT = "aws-sdk-js/1.0.18 KiroIDE-0.6.18"

# IdC (CLI) identity
KIRO_CLI_USER_AGENT = "aws-sdk-rust/1.3.9 os/macos lang/rust/1.87.0"
KIRO_CLI_AMZ_USER_AGENT = (
    "aws-sdk-rust/1.3.9 ua/2.1 api/ssooidc/1.88.0 os/macos lang/rust/1.87.0 m/E app/AmazonQ-For-CLI"
)

AGENT_MODE_SPEC = "spec"
AGENT_MODE_VIBE = "vibe"

ERROR_BODY_LOG_LIMIT = 500

EndpointResultHook = Callable[[str, str], None]
TextCallback = Callable[[str], Awaitable[None]]
ToolUseCallback = Callable[[ToolUse], Awaitable[None]]
UsageCallback = Callable[[TokenUsage], Awaitable[None]]
ErrorCallback = Callable[[GatewayError], Awaitable[None]]
QuotaCallback = Callable[[str], None]


def build_headers(credential: Credential, endpoint: Endpoint) -> dict[str, str]:
    """Request headers for one attempt. The invocation id is fresh each call."""
    idc = credential.is_idc
    return {
        "Content-Type": "application/json",
        "Accept": "*/*",
        "X-Amz-Target": endpoint.amz_target,
        "User-Agent": KIRO_CLI_USER_AGENT if idc else KIRO_USER_AGENT,
        "X-Amz-User-Agent": KIRO_CLI_AMZ_USER_AGENT if idc else KIRO_AMZ_USER_AGENT,
        "x-amzn-kiro-agent-mode": AGENT_MODE_VIBE if idc else AGENT_MODE_SPEC,
        "x-amzn-codewhisperer-optout": "true",
        "Amz-Sdk-Request": "attempt=1; max=3",
        "Amz-Sdk-Invocation-Id": str(uuid.uuid4()),
        "Authorization": f"Bearer {credential.access_token}",
    }


@dataclass
class KiroClientConfig:
    """Configuration for the Kiro client."""

    # Timeouts (seconds)
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    preferred_endpoint: str | None = None
    verify_checksums: bool = False


@dataclass
class KiroClient:
    """HTTP client for the upstream conversation API.

    Call ``connect()`` before use and ``close()`` when done, or use it as an
    async context manager.
    """

    config: KiroClientConfig = field(default_factory=KiroClientConfig)
    _session: aiohttp.ClientSession | None = None

    # Called with (endpoint name, "success" | "quota" | "failure")
    on_endpoint_result: EndpointResultHook | None = None

    async def connect(self) -> None:
        """Initialize HTTP session."""
        timeout = aiohttp.ClientTimeout(
            connect=self.config.connect_timeout,
            sock_read=self.config.read_timeout,
        )
        self._session = aiohttp.ClientSession(timeout=timeout)

    async def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "KiroClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise RuntimeError("Client not connected. Call connect() first.")
        return self._session

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def stream(
        self,
        credential: Credential,
        payload: KiroPayload,
        cancel: asyncio.Event | None = None,
        preferred_endpoint: str | None = None,
        trace_id: str = "-",
        on_quota: QuotaCallback | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream events for one request.

        Args:
            credential: Credential whose access token authorizes the call.
            payload: Request payload; its origin is rewritten per endpoint.
            cancel: Set to abort the call.
            preferred_endpoint: Endpoint key tried first.
            trace_id: Prefix for log lines.
            on_quota: Called with the endpoint name on every 429 answer.

        Yields:
            TextDelta, ToolUse and TokenUsage events, then EndOfStream.

        Raises:
            AuthError: On 401/403. Other endpoints are not tried.
            QuotaError: When every endpoint answered 429.
            UpstreamServerError, UpstreamAPIError: On other non-2xx statuses.
            UpstreamConnectionError: On transport failures.
            StreamDecodeError: On corrupt framing or in-band error frames.
            RequestCancelledError: When ``cancel`` is set mid-request.
        """
        async for _endpoint, event in self._stream_endpoints(
            credential, payload, cancel, preferred_endpoint, trace_id, on_quota
        ):
            yield event

    async def send_streaming(
        self,
        credential: Credential,
        payload: KiroPayload,
        on_text: TextCallback | None = None,
        on_tool_use: ToolUseCallback | None = None,
        on_usage: UsageCallback | None = None,
        on_error: ErrorCallback | None = None,
        cancel: asyncio.Event | None = None,
        preferred_endpoint: str | None = None,
        trace_id: str = "-",
    ) -> None:
        """Callback flavour of ``stream``.

        Text and tool uses are forwarded live. ``on_usage`` fires once with
        the final totals when the stream completes. Gateway errors go to
        ``on_error`` instead of being raised; without an error callback they
        propagate.
        """
        usage = TokenUsage()
        try:
            async for event in self.stream(credential, payload, cancel, preferred_endpoint, trace_id):
                if isinstance(event, TextDelta):
                    if on_text:
                        await on_text(event.text)
                elif isinstance(event, ToolUse):
                    if on_tool_use:
                        await on_tool_use(event)
                elif isinstance(event, TokenUsage):
                    usage = event
        except GatewayError as e:
            if on_error is None:
                raise
            await on_error(e)
            return

        if on_usage:
            await on_usage(usage)

    async def send_buffered(
        self,
        credential: Credential,
        payload: KiroPayload,
        cancel: asyncio.Event | None = None,
        preferred_endpoint: str | None = None,
        trace_id: str = "-",
    ) -> UpstreamResult:
        """Collect a whole response. Raises the same errors as ``stream``.

        The result names the endpoint that served it and every endpoint
        that answered 429 on the way there.
        """
        parts: list[str] = []
        tool_uses: list[ToolUse] = []
        usage = TokenUsage()
        served_by: str | None = None
        quota_endpoints: list[str] = []

        async for endpoint, event in self._stream_endpoints(
            credential, payload, cancel, preferred_endpoint, trace_id, quota_endpoints.append
        ):
            served_by = endpoint.name
            if isinstance(event, TextDelta):
                parts.append(event.text)
            elif isinstance(event, ToolUse):
                tool_uses.append(event)
            elif isinstance(event, TokenUsage):
                usage = event

        return UpstreamResult(
            text="".join(parts),
            tool_uses=tuple(tool_uses),
            usage=usage,
            endpoint=served_by,
            quota_endpoints=tuple(quota_endpoints),
        )

    async def list_models(self, credential: Credential) -> list[dict[str, Any]]:
        """Upstream model catalogue. Returns [] on any failure."""
        headers = {
            "Authorization": f"Bearer {credential.access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": KIRO_USER_AGENT,
            "X-Amz-User-Agent": KIRO_AMZ_USER_AGENT,
            "x-amzn-codewhisperer-optout": "true",
        }
        params = {"origin": "AI_EDITOR", "maxResults": "50"}
        try:
            async with self.session.get(MODELS_URL, headers=headers, params=params) as response:
                if response.status != 200:
                    logger.error("ListAvailableModels failed: %d", response.status)
                    return []
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.error("ListAvailableModels error: %s", e)
            return []
        models = data.get("models") if isinstance(data, dict) else None
        return models if isinstance(models, list) else []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _stream_endpoints(
        self,
        credential: Credential,
        payload: KiroPayload,
        cancel: asyncio.Event | None,
        preferred_endpoint: str | None,
        trace_id: str,
        on_quota: QuotaCallback | None = None,
    ) -> AsyncIterator[tuple[Endpoint, StreamEvent]]:
        last_error: GatewayError | None = None
        preference = preferred_endpoint or self.config.preferred_endpoint

        for endpoint in ordered_endpoints(preference):
            payload.origin = endpoint.origin
            body = payload.to_dict()
            logger.debug(
                "[%s] Request to %s: content=%d chars, tools=%d",
                trace_id,
                endpoint.name,
                len(body["conversationState"]["currentMessage"]["userInputMessage"]["content"]),
                len(payload.tools),
            )

            response = await self._post(endpoint, build_headers(credential, endpoint), body, cancel)
            try:
                if response.status == 429:
                    error_body = await response.text()
                    logger.warning("[%s] Endpoint %s quota exhausted, trying next", trace_id, endpoint.name)
                    self._report(endpoint, "quota")
                    if on_quota:
                        on_quota(endpoint.name)
                    last_error = QuotaError(
                        f"Quota exhausted on {endpoint.name}", response_body=error_body
                    )
                    continue

                if response.status in (401, 403):
                    error_body = await response.text()
                    self._report(endpoint, "failure")
                    raise AuthError(
                        f"Auth error {response.status}: {error_body[:ERROR_BODY_LOG_LIMIT]}",
                        status_code=response.status,
                        response_body=error_body,
                    )

                if response.status >= 300:
                    error_body = await response.text()
                    self._report(endpoint, "failure")
                    logger.error(
                        "[%s] Upstream error %d from %s: %s",
                        trace_id,
                        response.status,
                        endpoint.name,
                        error_body[:ERROR_BODY_LOG_LIMIT],
                    )
                    error_class = UpstreamServerError if response.status >= 500 else UpstreamAPIError
                    raise error_class(
                        f"API error {response.status}: {error_body[:ERROR_BODY_LOG_LIMIT]}",
                        status_code=response.status,
                        response_body=error_body,
                    )

                self._report(endpoint, "success")
                logger.debug("[%s] Receiving event stream from %s", trace_id, endpoint.name)
                async for event in decode_stream(
                    self._iter_body(response, cancel),
                    verify_checksums=self.config.verify_checksums,
                ):
                    if isinstance(event, EndOfStream):
                        logger.debug("[%s] Stream complete via %s", trace_id, endpoint.name)
                    yield endpoint, event
                return
            finally:
                # No-op once the body was read to EOF; drops the connection otherwise
                response.close()

        assert last_error is not None
        raise last_error

    async def _post(
        self,
        endpoint: Endpoint,
        headers: dict[str, str],
        body: dict[str, Any],
        cancel: asyncio.Event | None,
    ) -> aiohttp.ClientResponse:
        session = self.session

        async def send() -> aiohttp.ClientResponse:
            return await session.post(endpoint.url, json=body, headers=headers)

        try:
            return await _race(send(), cancel)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self._report(endpoint, "failure")
            raise UpstreamConnectionError(f"Request to {endpoint.name} failed: {e!r}") from e

    async def _iter_body(
        self, response: aiohttp.ClientResponse, cancel: asyncio.Event | None
    ) -> AsyncIterator[bytes]:
        while True:
            try:
                chunk = await _race(response.content.readany(), cancel)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                raise UpstreamConnectionError(f"Upstream read failed: {e!r}") from e
            if not chunk:
                return
            yield chunk

    def _report(self, endpoint: Endpoint, outcome: str) -> None:
        if self.on_endpoint_result:
            self.on_endpoint_result(endpoint.name, outcome)


async def _race(coro: Coroutine[Any, Any, T], cancel: asyncio.Event | None) -> T:
    """Await ``coro`` unless ``cancel`` fires first.

    Raises:
        RequestCancelledError: If the event was set before ``coro`` finished.
    """
    if cancel is None:
        return await coro
    if cancel.is_set():
        coro.close()
        raise RequestCancelledError("Request cancelled")

    task = asyncio.ensure_future(coro)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
    if task.cancelled():
        raise RequestCancelledError("Request cancelled")
    return task.result()
