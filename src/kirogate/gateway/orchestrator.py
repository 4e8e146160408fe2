"""Credential acquisition and the retry/failover policy for buffered calls.

Streaming calls do not go through ``call_with_retry``: once response
headers are committed there is nothing left to retry.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from kirogate.gateway.clients.endpoints import ordered_endpoints
from kirogate.gateway.clients.kiro_client import KiroClient
from kirogate.gateway.errors import ErrorKind, GatewayError
from kirogate.gateway.pool import Credential, CredentialPool
from kirogate.gateway.refresh import TokenRefresher
from kirogate.gateway.transforms.types import KiroPayload, UpstreamResult

logger = logging.getLogger(__name__)

PayloadBuilder = Callable[[Credential], KiroPayload]


@dataclass
class Orchestrator:
    """Ties the pool, the refresher and the client together.

    Args:
        max_retries: Attempts per buffered call.
        retry_delay: Base delay in seconds; attempt ``n`` (1-based) waits
            ``n * retry_delay`` after a server error.
        refresh_lookahead: Refresh tokens expiring within this many seconds.
        preferred_endpoint: Endpoint key tried first.
    """

    pool: CredentialPool
    client: KiroClient
    refresher: TokenRefresher
    max_retries: int = 3
    retry_delay: float = 1.0
    refresh_lookahead: float = 300.0
    preferred_endpoint: str | None = None

    async def acquire(self) -> Credential | None:
        """Next credential, refreshed first when it is about to expire.

        A failed refresh falls back to whatever the pool offers next.
        """
        credential = self.pool.next()
        if credential is None:
            return None

        if self.pool.is_expiring_soon(credential, self.refresh_lookahead):
            if not await self.refresher.refresh(credential):
                return self.pool.next()
            return self.pool.get(credential.id)
        return credential

    async def call_with_retry(
        self,
        credential: Credential,
        build_payload: PayloadBuilder,
        cancel: asyncio.Event | None = None,
        trace_id: str = "-",
    ) -> tuple[UpstreamResult, Credential]:
        """Buffered call with refresh, endpoint rotation and credential failover.

        The payload is rebuilt for every attempt since it embeds the
        credential's profile ARN.

        Returns:
            The result and the credential that produced it. Success and
            quota signals are already booked on the pool.

        Raises:
            GatewayError: The last error once retries run out, or the first
                non-retryable one.
        """
        endpoint_order = [endpoint.key for endpoint in ordered_endpoints(self.preferred_endpoint)]
        endpoint_index = 0
        current = credential
        refreshed: set[str] = set()
        last_error: GatewayError | None = None

        for attempt in range(1, self.max_retries + 1):
            try:
                result = await self.client.send_buffered(
                    current,
                    build_payload(current),
                    cancel=cancel,
                    preferred_endpoint=endpoint_order[endpoint_index],
                    trace_id=trace_id,
                )
            except GatewayError as e:
                last_error = e
                logger.warning(
                    "[%s] Attempt %d/%d with %s failed: %s",
                    trace_id,
                    attempt,
                    self.max_retries,
                    current.label,
                    e,
                )

                if not e.retryable:
                    # Cancellation, validation, decode and other API errors
                    break

                if e.kind is ErrorKind.AUTH:
                    if current.id not in refreshed:
                        refreshed.add(current.id)
                        if await self.refresher.refresh(current):
                            current = self.pool.get(current.id) or current
                            continue
                    replacement = self._rotate(current)
                    if replacement is None:
                        break
                    current = replacement
                    continue

                if e.kind is ErrorKind.QUOTA:
                    self.pool.record_error(current.id, is_quota_error=True, message=str(e))
                    endpoint_index = (endpoint_index + 1) % len(endpoint_order)
                    if endpoint_index == 0:
                        # Every endpoint tried with this credential
                        current = self._rotate(current) or current
                    continue

                if e.kind is ErrorKind.SERVER:
                    if attempt < self.max_retries:
                        await asyncio.sleep(attempt * self.retry_delay)
                    continue
            else:
                for endpoint_name in result.quota_endpoints:
                    self.pool.record_error(
                        current.id, is_quota_error=True, message=f"Quota exhausted on {endpoint_name}"
                    )
                self.pool.record_success(current.id, result.usage.total_tokens)
                return result, current

        assert last_error is not None
        if last_error.kind not in (ErrorKind.QUOTA, ErrorKind.CANCELLED):
            self.pool.record_error(current.id, is_quota_error=False, message=str(last_error))
        raise last_error

    def _rotate(self, current: Credential) -> Credential | None:
        """A different usable credential, or None."""
        candidate = self.pool.next()
        if candidate is None or candidate.id == current.id:
            return None
        logger.info("Switching credential %s -> %s", current.label, candidate.label)
        return candidate
