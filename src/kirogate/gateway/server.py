"""Kiro gateway HTTP server.

Exposes OpenAI-compatible /v1/chat/completions and Anthropic-compatible
/v1/messages endpoints, plus health, model list and admin routes.

For every chat request the server:
1. Validates the body and assigns a trace ID
2. Acquires a credential from the pool (refreshing it when near expiry)
3. Translates the request into a Kiro payload
4. Streams the upstream events back as SSE, or collects them with
   retry and failover for buffered responses
5. Books the outcome on the pool and in the gateway stats
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import secrets
import ssl
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from aiohttp import web

from kirogate import __version__
from kirogate.gateway.clients.endpoints import endpoint_keys
from kirogate.gateway.clients.kiro_client import KiroClient, KiroClientConfig
from kirogate.gateway.errors import (
    ERROR_TYPE_MAP,
    ErrorKind,
    GatewayError,
    NoCredentialError,
    RequestCancelledError,
    RequestValidationError,
)
from kirogate.gateway.orchestrator import Orchestrator
from kirogate.gateway.pool import Credential, CredentialPool
from kirogate.gateway.refresh import CredentialUpdateHook, RefreshCallback, TokenRefresher
from kirogate.gateway.stats import GatewayStats, RequestLog
from kirogate.gateway.tracing import RequestTracer
from kirogate.gateway.transforms.anthropic import AnthropicTransformer, ClaudeStreamAssembler
from kirogate.gateway.transforms.kiro import ADVERTISED_MODELS, DEFAULT_MODEL_ID, is_thinking_enabled
from kirogate.gateway.transforms.openai import OpenAIStreamWriter, OpenAITransformer
from kirogate.gateway.transforms.types import KiroPayload, TokenUsage, ToolUse, UpstreamResult
from kirogate.gateway.transforms.validation import validate_request

logger = logging.getLogger(__name__)

Shape = Literal["openai", "anthropic"]
StreamWriter = OpenAIStreamWriter | ClaudeStreamAssembler
RequestHook = Callable[[dict[str, Any]], None]
ResponseHook = Callable[[dict[str, Any]], None]

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": (
        "Content-Type, Authorization, X-Api-Key, anthropic-version, anthropic-beta"
    ),
}

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}

# Routes reachable without an API key
PUBLIC_PATHS = frozenset({"/health", "/"})

# Canonical route names used in stats and hooks
CHAT_PATHS: dict[str, str] = {
    "openai": "/v1/chat/completions",
    "anthropic": "/v1/messages",
}

MODEL_OWNER = "kiro-proxy"


@dataclass
class GatewayConfig:
    """Configuration for the gateway server."""

    host: str = "127.0.0.1"
    port: int = 5580

    # Clients must send this key when set; every route is open otherwise
    api_key: str | None = None

    # Retry policy for buffered calls
    max_retries: int = 3
    retry_delay: float = 1.0  # seconds, multiplied by the attempt number

    # Refresh tokens that expire within this many seconds
    refresh_lookahead: float = 300.0

    # "codewhisperer" or "amazonq"; None keeps the table order
    preferred_endpoint: str | None = None

    # Upstream client timeouts
    connect_timeout: float = 10.0
    read_timeout: float = 300.0

    # Request limits
    max_body_size: int = 50 * 1024 * 1024  # 50MB

    # Size of the recent-requests ring buffer
    recent_requests: int = 100

    # Debug: save raw requests/responses to files
    debug_dir: str | None = None

    # Log every inbound request line
    log_requests: bool = False

    # Serve HTTPS when both are set
    tls_cert: str | None = None
    tls_key: str | None = None


# Fields POST /admin/config may change while running
MUTABLE_CONFIG_FIELDS = frozenset(
    {
        "api_key",
        "max_retries",
        "retry_delay",
        "refresh_lookahead",
        "preferred_endpoint",
        "recent_requests",
        "debug_dir",
        "log_requests",
    }
)


@dataclass
class _RequestContext:
    """Per-request bookkeeping shared by the streaming and buffered paths."""

    trace_id: str
    path: str
    model: str
    stream: bool
    started: float = field(default_factory=time.monotonic)
    cancel: asyncio.Event = field(default_factory=asyncio.Event)
    finished: bool = False

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started


@dataclass
class GatewayServer:
    """HTTP front of the gateway.

    Example:
        >>> pool = CredentialPool()
        >>> pool.add(Credential(id="a", access_token="..."))
        >>> server = GatewayServer(config=GatewayConfig(port=5580), pool=pool)
        >>> await server.serve()
    """

    config: GatewayConfig
    pool: CredentialPool
    refresh_callback: RefreshCallback | None = None

    # Collaborator hooks
    on_request: RequestHook | None = None
    on_response: ResponseHook | None = None
    on_credential_update: CredentialUpdateHook | None = None

    _app: web.Application | None = None
    _runner: web.AppRunner | None = None
    _shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    _stats: GatewayStats = field(init=False)
    _tracer: RequestTracer = field(init=False)
    _client: KiroClient = field(init=False)
    _refresher: TokenRefresher = field(init=False)
    _orchestrator: Orchestrator = field(init=False)

    def __post_init__(self) -> None:
        self._stats = GatewayStats(max_recent=self.config.recent_requests)
        self._tracer = RequestTracer(debug_dir=self.config.debug_dir)
        self._client = KiroClient(
            config=KiroClientConfig(
                connect_timeout=self.config.connect_timeout,
                read_timeout=self.config.read_timeout,
                preferred_endpoint=self.config.preferred_endpoint,
            ),
            on_endpoint_result=self._stats.record_endpoint,
        )
        self._refresher = TokenRefresher(
            pool=self.pool,
            callback=self.refresh_callback,
            on_credential_update=self.on_credential_update,
        )
        self._orchestrator = Orchestrator(
            pool=self.pool,
            client=self._client,
            refresher=self._refresher,
            max_retries=self.config.max_retries,
            retry_delay=self.config.retry_delay,
            refresh_lookahead=self.config.refresh_lookahead,
            preferred_endpoint=self.config.preferred_endpoint,
        )
        self._translators: dict[str, OpenAITransformer | AnthropicTransformer] = {
            "openai": OpenAITransformer(),
            "anthropic": AnthropicTransformer(),
        }

    @property
    def stats(self) -> GatewayStats:
        return self._stats

    @property
    def client(self) -> KiroClient:
        return self._client

    @property
    def port(self) -> int:
        """Bound port; differs from the configured one when that was 0."""
        if self._runner and self._runner.addresses:
            return int(self._runner.addresses[0][1])
        return self.config.port

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def build_app(self) -> web.Application:
        app = web.Application(
            client_max_size=self.config.max_body_size,
            middlewares=[self._cors_middleware, self._auth_middleware],
        )
        for path in ("/v1/chat/completions", "/chat/completions"):
            app.router.add_post(path, self._handle_chat_completions)
        for path in ("/v1/messages", "/messages"):
            app.router.add_post(path, self._handle_messages)
        for path in ("/v1/models", "/models"):
            app.router.add_get(path, self._handle_models)
        for path in ("/health", "/"):
            app.router.add_get(path, self._handle_health)
        app.router.add_get("/admin/stats", self._handle_admin_stats)
        app.router.add_get("/admin/accounts", self._handle_admin_accounts)
        app.router.add_get("/admin/config", self._handle_get_config)
        app.router.add_post("/admin/config", self._handle_update_config)
        app.router.add_get("/admin/logs", self._handle_admin_logs)
        return app

    async def start(self) -> None:
        """Connect the upstream client and start listening."""
        await self._client.connect()
        self._app = self.build_app()
        # Client disconnects cancel the handler, which aborts the upstream call
        self._runner = web.AppRunner(self._app, handler_cancellation=True)
        await self._runner.setup()
        site = web.TCPSite(
            self._runner, self.config.host, self.config.port, ssl_context=self._ssl_context()
        )
        await site.start()

        scheme = "https" if self.config.tls_cert else "http"
        logger.info("Kiro gateway listening on %s://%s:%d", scheme, self.config.host, self.port)
        logger.info(
            "Credentials: %d loaded, %d available", self.pool.size, self.pool.available_count
        )
        if not self.config.api_key:
            logger.warning("No API key configured; every route, admin included, is open")
        if self.config.debug_dir:
            logger.info("Debug files will be saved to: %s", self.config.debug_dir)

    async def serve(self) -> None:
        """Start the server and block until ``shutdown`` is called."""
        await self.start()
        await self._shutdown_event.wait()

    async def shutdown(self) -> None:
        """Shutdown the server gracefully."""
        logger.info("Shutting down Kiro gateway...")
        self._shutdown_event.set()
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        await self._client.close()

    def _ssl_context(self) -> ssl.SSLContext | None:
        if not (self.config.tls_cert and self.config.tls_key):
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.config.tls_cert, self.config.tls_key)
        return context

    # ------------------------------------------------------------------
    # Middlewares
    # ------------------------------------------------------------------

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=204, headers=CORS_HEADERS)

        if self.config.log_requests:
            logger.info("%s %s", request.method, request.path)

        try:
            response = await handler(request)
        except web.HTTPNotFound:
            response = self._error_response("Not Found", 404)
        except web.HTTPMethodNotAllowed:
            response = self._error_response("Method Not Allowed", 405)

        # Streaming handlers send CORS headers themselves before preparing
        if not response.prepared:
            response.headers.update(CORS_HEADERS)
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        if request.path in PUBLIC_PATHS or self._authorized(request):
            return await handler(request)
        return self._error_response("Invalid or missing API key", 401)

    def _authorized(self, request: web.Request) -> bool:
        expected = self.config.api_key
        if not expected:
            return True

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer ") and secrets.compare_digest(auth_header[7:], expected):
            return True
        api_key = request.headers.get("X-Api-Key", "")
        return bool(api_key) and secrets.compare_digest(api_key, expected)

    # ------------------------------------------------------------------
    # Chat routes
    # ------------------------------------------------------------------

    async def _handle_chat_completions(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/chat/completions."""
        return await self._handle_chat(request, "openai")

    async def _handle_messages(self, request: web.Request) -> web.StreamResponse:
        """Handle POST /v1/messages."""
        return await self._handle_chat(request, "anthropic")

    async def _handle_chat(self, request: web.Request, shape: Shape) -> web.StreamResponse:
        path = CHAT_PATHS[shape]

        try:
            body = await request.json()
        except ValueError as e:
            return self._error_response(f"Invalid JSON: {e}", 400)

        errors = validate_request(body, shape)
        if errors:
            error = RequestValidationError("; ".join(errors))
            logger.warning("Rejected %s request: %s", path, error)
            return self._error_response(str(error), error.status_code)

        ctx = _RequestContext(
            trace_id=self._tracer.generate_trace_id(body),
            path=path,
            model=body.get("model") or DEFAULT_MODEL_ID,
            stream=bool(body.get("stream")),
        )
        self._tracer.save_debug(ctx.trace_id, "1_request.json", body)
        self._stats.record_started()
        self._emit_request({"path": path, "method": request.method})

        credential = await self._orchestrator.acquire()
        if credential is None:
            error = NoCredentialError("No available accounts")
            self._finish(ctx, None, error=error)
            return self._error_response(str(error), error.status_code)

        self._tracer.log_request(ctx.trace_id, path, ctx.model, credential.label, ctx.stream)
        self._emit_request({"path": path, "method": request.method, "credential_id": credential.id})

        translator = self._translators[shape]
        thinking = is_thinking_enabled(request.headers)

        def build_payload(cred: Credential) -> KiroPayload:
            return translator.to_kiro(body, profile_arn=cred.profile_arn, thinking=thinking)

        try:
            if ctx.stream:
                writer: StreamWriter = (
                    OpenAIStreamWriter(model=ctx.model)
                    if shape == "openai"
                    else ClaudeStreamAssembler(model=ctx.model)
                )
                return await self._handle_streaming(request, ctx, credential, build_payload(credential), writer)
            return await self._handle_buffered(ctx, credential, build_payload, translator)
        except asyncio.CancelledError:
            logger.info("[%s] Request cancelled by client", ctx.trace_id)
            if not ctx.finished:
                self._finish(ctx, credential, error=RequestCancelledError("Client disconnected"))
            raise
        finally:
            # Stops any upstream read still racing this request
            ctx.cancel.set()

    async def _handle_buffered(
        self,
        ctx: _RequestContext,
        credential: Credential,
        build_payload: Callable[[Credential], KiroPayload],
        translator: OpenAITransformer | AnthropicTransformer,
    ) -> web.Response:
        """Collect the whole response, with retries and failover."""
        try:
            result, used = await self._orchestrator.call_with_retry(
                credential, build_payload, cancel=ctx.cancel, trace_id=ctx.trace_id
            )
        except GatewayError as e:
            self._finish(ctx, credential, error=e)
            return self._error_response(str(e), _http_status(e))
        except Exception as e:
            logger.exception("[%s] Unexpected error", ctx.trace_id)
            self.pool.record_error(credential.id, is_quota_error=False, message=str(e))
            error = GatewayError(f"Internal error: {e}")
            self._finish(ctx, credential, error=error)
            return self._error_response(str(error), 500)

        response_body = translator.from_result(result, ctx.model)
        self._tracer.save_debug(ctx.trace_id, "2_response.json", response_body)
        self._finish(ctx, used, result=result)
        return web.json_response(response_body)

    async def _handle_streaming(
        self,
        request: web.Request,
        ctx: _RequestContext,
        credential: Credential,
        payload: KiroPayload,
        writer: StreamWriter,
    ) -> web.StreamResponse:
        """Relay upstream events as SSE. No retries once headers are sent."""
        response = web.StreamResponse(status=200, headers={**SSE_HEADERS, **CORS_HEADERS})
        await response.prepare(request)

        usage = TokenUsage()
        tool_count = 0
        quota_hits: list[str] = []

        def on_quota(endpoint_name: str) -> None:
            quota_hits.append(endpoint_name)
            self.pool.record_error(
                credential.id, is_quota_error=True, message=f"Quota exhausted on {endpoint_name}"
            )

        try:
            await response.write(writer.start())
            async for event in self._client.stream(
                credential,
                payload,
                cancel=ctx.cancel,
                preferred_endpoint=self.config.preferred_endpoint,
                trace_id=ctx.trace_id,
                on_quota=on_quota,
            ):
                if isinstance(event, TokenUsage):
                    usage = event
                elif isinstance(event, ToolUse):
                    tool_count += 1
                chunk = writer.feed(event)
                if chunk:
                    await response.write(chunk)
            await response.write(writer.finish())
        except GatewayError as e:
            logger.error("[%s] Stream error: %s", ctx.trace_id, e)
            # 429s seen on the way were already booked by on_quota
            if e.kind is not ErrorKind.CANCELLED and not (e.kind is ErrorKind.QUOTA and quota_hits):
                self.pool.record_error(
                    credential.id, is_quota_error=e.kind is ErrorKind.QUOTA, message=str(e)
                )
            self._finish(ctx, credential, error=e)
            with contextlib.suppress(ConnectionResetError):
                await response.write(writer.error(e))
                await response.write_eof()
            return response
        except ConnectionResetError:
            logger.debug("[%s] Client disconnected during streaming", ctx.trace_id)
            ctx.cancel.set()
            self._finish(ctx, credential, error=RequestCancelledError("Client disconnected"))
            return response

        self.pool.record_success(credential.id, usage.total_tokens)
        self._finish(
            ctx,
            credential,
            result=UpstreamResult(text="", usage=usage),
        )
        logger.info("[%s] Stream complete (%d tool calls)", ctx.trace_id, tool_count)
        with contextlib.suppress(ConnectionResetError):
            await response.write_eof()
        return response

    def _finish(
        self,
        ctx: _RequestContext,
        credential: Credential | None,
        result: UpstreamResult | None = None,
        error: GatewayError | None = None,
    ) -> None:
        """Fold a finished request into stats, logs and hooks."""
        ctx.finished = True
        usage = result.usage if result else TokenUsage()
        status = 200 if error is None else _http_status(error)
        entry = RequestLog(
            timestamp=time.time(),
            path=ctx.path,
            model=ctx.model,
            credential_id=credential.id if credential else None,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            response_time=round(ctx.elapsed, 3),
            success=error is None,
            endpoint=result.endpoint if result else None,
            error=str(error) if error else None,
        )
        self._stats.record_finished(entry)
        self._tracer.log_response(
            ctx.trace_id,
            status,
            ctx.elapsed,
            tokens_in=usage.input_tokens,
            tokens_out=usage.output_tokens,
            error=entry.error,
        )
        info: dict[str, Any] = {"path": ctx.path, "status": status}
        if error is None:
            info["tokens"] = usage.total_tokens
        else:
            info["error"] = str(error)
        self._emit_response(info)

    def _emit_request(self, info: dict[str, Any]) -> None:
        if self.on_request:
            self.on_request(info)

    def _emit_response(self, info: dict[str, Any]) -> None:
        if self.on_response:
            self.on_response(info)

    # ------------------------------------------------------------------
    # Info routes
    # ------------------------------------------------------------------

    async def _handle_models(self, request: web.Request) -> web.Response:
        """Handle GET /v1/models - static model catalogue."""
        created = int(time.time())
        models = [
            {"id": model, "object": "model", "created": created, "owned_by": MODEL_OWNER}
            for model in ADVERTISED_MODELS
        ]
        return web.json_response({"object": "list", "data": models})

    async def _handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - health check endpoint."""
        return web.json_response(
            {
                "status": "ok",
                "version": __version__,
                "accounts": self.pool.size,
                "available_accounts": self.pool.available_count,
                "stats": self._stats.summary(),
            }
        )

    # ------------------------------------------------------------------
    # Admin routes
    # ------------------------------------------------------------------

    async def _handle_admin_stats(self, request: web.Request) -> web.Response:
        return web.json_response(self._stats.to_dict(recent_limit=50))

    async def _handle_admin_logs(self, request: web.Request) -> web.Response:
        return web.json_response({"recent_requests": self._stats.recent(100)})

    async def _handle_admin_accounts(self, request: web.Request) -> web.Response:
        accounts = [
            {
                "id": entry["id"],
                "email": entry["email"],
                "is_available": entry["is_usable"],
                "last_used": entry["last_used"],
                "request_count": entry["request_count"],
                "error_count": entry["error_count"],
                "quota_error_count": entry["quota_error_count"],
                "expires_at": entry["expires_at"],
                "auth_method": entry["auth_method"],
            }
            for entry in self.pool.snapshot()
        ]
        return web.json_response(
            {
                "total": len(accounts),
                "available": sum(1 for account in accounts if account["is_available"]),
                "accounts": accounts,
            }
        )

    async def _handle_get_config(self, request: web.Request) -> web.Response:
        return web.json_response(self._safe_config())

    async def _handle_update_config(self, request: web.Request) -> web.Response:
        """Handle POST /admin/config - change the mutable settings at runtime."""
        try:
            changes = await request.json()
        except ValueError as e:
            return self._error_response(f"Invalid JSON: {e}", 400)
        if not isinstance(changes, dict):
            return self._error_response("Config update must be a JSON object", 400)

        unknown = sorted(set(changes) - MUTABLE_CONFIG_FIELDS)
        if unknown:
            return self._error_response(f"Unknown or read-only config keys: {', '.join(unknown)}", 400)
        preferred = changes.get("preferred_endpoint")
        if preferred is not None and preferred not in endpoint_keys():
            return self._error_response(f"Unknown endpoint: {preferred}", 400)

        self.apply_config(changes)
        return web.json_response({"success": True, "config": self._safe_config()})

    def apply_config(self, changes: dict[str, Any]) -> None:
        """Apply runtime config changes and push them to the components."""
        for name, value in changes.items():
            setattr(self.config, name, value)

        self._orchestrator.max_retries = self.config.max_retries
        self._orchestrator.retry_delay = self.config.retry_delay
        self._orchestrator.refresh_lookahead = self.config.refresh_lookahead
        self._orchestrator.preferred_endpoint = self.config.preferred_endpoint
        self._client.config.preferred_endpoint = self.config.preferred_endpoint
        self._tracer.debug_dir = self.config.debug_dir
        if self.config.recent_requests != self._stats.max_recent:
            self._stats.resize(self.config.recent_requests)
        logger.info("Config updated: %s", ", ".join(sorted(changes)))

    def _safe_config(self) -> dict[str, Any]:
        data = asdict(self.config)
        data["api_key"] = "***" if self.config.api_key else None
        return data

    def _error_response(self, message: str, status: int) -> web.Response:
        """Create an error response in the shared {"error": {...}} shape."""
        return web.json_response(
            {
                "error": {
                    "message": message,
                    "type": ERROR_TYPE_MAP.get(status, "api_error"),
                    "code": status,
                }
            },
            status=status,
        )


def _http_status(error: GatewayError) -> int:
    """HTTP status a failed chat request is answered with."""
    if error.kind is ErrorKind.QUOTA:
        return 429
    if error.kind is ErrorKind.AUTH:
        return 401
    if error.kind is ErrorKind.VALIDATION:
        return 400
    if error.kind is ErrorKind.NO_CREDENTIAL:
        return 503
    if error.kind is ErrorKind.CANCELLED:
        return error.status_code
    return 500


