"""Single-flight token refresh.

Concurrent requests that find the same credential near expiry share one
refresh call instead of each hitting the auth service.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from kirogate.gateway.pool import Credential, CredentialPool

logger = logging.getLogger(__name__)


@dataclass
class RefreshResult:
    """Outcome of a refresh callback."""

    success: bool
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: float | None = None  # epoch seconds
    error: str | None = None


RefreshCallback = Callable[[Credential], Awaitable[RefreshResult]]
CredentialUpdateHook = Callable[[Credential], Awaitable[None]]


@dataclass
class TokenRefresher:
    """Refreshes credentials through a collaborator callback.

    At most one refresh per credential id is in flight. Later callers await
    the same future and get the same outcome.
    """

    pool: CredentialPool
    callback: RefreshCallback | None = None
    on_credential_update: CredentialUpdateHook | None = None
    _inflight: dict[str, asyncio.Future[bool]] = field(default_factory=dict)

    def in_flight(self, credential_id: str) -> bool:
        return credential_id in self._inflight

    async def refresh(self, credential: Credential) -> bool:
        """Refresh a credential. Returns True when a new token was stored."""
        if self.callback is None:
            logger.warning("No token refresh callback configured")
            return False

        pending = self._inflight.get(credential.id)
        if pending is not None:
            logger.debug("Joining in-flight refresh for %s", credential.label)
            # shield: one waiter being cancelled must not cancel the others
            return await asyncio.shield(pending)

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._inflight[credential.id] = future
        try:
            ok = await self._run(credential)
        except asyncio.CancelledError:
            # Waiters see a failed refresh rather than inheriting the cancel
            future.set_result(False)
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not warn
            future.exception()
            raise
        else:
            future.set_result(ok)
            return ok
        finally:
            del self._inflight[credential.id]

    async def _run(self, credential: Credential) -> bool:
        assert self.callback is not None
        logger.info("Refreshing token for %s", credential.label)
        start = time.monotonic()
        try:
            result = await self.callback(credential)
        except Exception as e:
            logger.error("Token refresh error for %s: %s", credential.label, e)
            self.pool.mark_needs_refresh(credential.id)
            return False

        if not result.success or not result.access_token:
            logger.error("Token refresh failed for %s: %s", credential.label, result.error)
            self.pool.mark_needs_refresh(credential.id)
            return False

        updated = self.pool.update(
            credential.id,
            access_token=result.access_token,
            refresh_token=result.refresh_token or credential.refresh_token,
            expires_at=result.expires_at,
            is_available=True,
        )
        logger.info(
            "Token refreshed for %s in %.2fs", credential.label, time.monotonic() - start
        )
        if updated is not None and self.on_credential_update:
            await self.on_credential_update(updated)
        return True
