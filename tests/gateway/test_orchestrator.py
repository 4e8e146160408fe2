"""Tests for credential acquisition and the buffered retry policy."""

import asyncio
import time

import pytest
from aioresponses import aioresponses
from yarl import URL

from kirogate.gateway.clients.endpoints import ENDPOINTS
from kirogate.gateway.clients.kiro_client import KiroClient
from kirogate.gateway.errors import QuotaError, RequestCancelledError, UpstreamAPIError, UpstreamServerError
from kirogate.gateway.orchestrator import Orchestrator
from kirogate.gateway.pool import CredentialPool
from kirogate.gateway.refresh import RefreshResult, TokenRefresher
from kirogate.gateway.transforms.types import KiroPayload

CODEWHISPERER_URL = ENDPOINTS[0].url
AMAZONQ_URL = ENDPOINTS[1].url


def _build_payload(credential):
    return KiroPayload(content="hi", model_id="claude-sonnet-4.5", profile_arn=credential.profile_arn)


def _auth_headers(m, url):
    return [call.kwargs["headers"]["Authorization"] for call in m.requests.get(("POST", URL(url)), [])]


@pytest.fixture
async def client():
    client = KiroClient()
    await client.connect()
    yield client
    await client.close()


@pytest.fixture
def refresh_calls():
    return []


@pytest.fixture
def make_orchestrator(pool, client, refresh_calls):
    """Factory for an orchestrator whose refresh callback succeeds or fails."""

    def factory(refresh_ok: bool = True, **kwargs) -> Orchestrator:
        async def callback(credential):
            refresh_calls.append(credential.id)
            if not refresh_ok:
                return RefreshResult(success=False, error="invalid_grant")
            return RefreshResult(
                success=True,
                access_token=f"fresh-{credential.id}",
                expires_at=time.time() + 3600,
            )

        refresher = TokenRefresher(pool=pool, callback=callback)
        kwargs.setdefault("retry_delay", 0)
        return Orchestrator(pool=pool, client=client, refresher=refresher, **kwargs)

    return factory


class TestAcquire:
    """Tests for Orchestrator.acquire()."""

    async def test_round_robin(self, make_orchestrator):
        """Credentials come out in pool order."""
        orchestrator = make_orchestrator()

        first = await orchestrator.acquire()
        second = await orchestrator.acquire()

        assert [first.id, second.id] == ["acct-1", "acct-2"]

    async def test_expiring_credential_is_refreshed(self, pool, make_orchestrator, refresh_calls):
        """A token inside the lookahead window is refreshed before use."""
        pool.update("acct-1", expires_at=time.time() + 10)
        orchestrator = make_orchestrator()

        credential = await orchestrator.acquire()

        assert refresh_calls == ["acct-1"]
        assert credential.id == "acct-1"
        assert credential.access_token == "fresh-acct-1"

    async def test_failed_refresh_falls_back(self, pool, make_orchestrator):
        """When the refresh fails, the next credential is used."""
        pool.update("acct-1", expires_at=time.time() + 10)
        orchestrator = make_orchestrator(refresh_ok=False)

        credential = await orchestrator.acquire()

        assert credential.id == "acct-2"
        assert pool.get("acct-1").is_available is False

    async def test_empty_pool(self, client):
        """An empty pool yields None."""
        pool = CredentialPool()
        orchestrator = Orchestrator(pool=pool, client=client, refresher=TokenRefresher(pool=pool))

        assert await orchestrator.acquire() is None


class TestCallWithRetry:
    """Tests for Orchestrator.call_with_retry()."""

    async def test_quota_then_success_counts_quota_only(self, pool, make_orchestrator, text_stream):
        """A 429 followed by success books one quota error and no generic error."""
        orchestrator = make_orchestrator()
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=429, body="limit")
            m.post(AMAZONQ_URL, body=text_stream("ok"))

            result, used = await orchestrator.call_with_retry(credential, _build_payload)

        assert result.text == "ok"
        assert used.id == "acct-1"
        assert used.quota_error_count == 1
        assert used.error_count == 0
        assert used.request_count == 1
        assert used.tokens_used == 12

    async def test_auth_error_refreshes_once(self, pool, make_orchestrator, refresh_calls, text_stream):
        """A 401 refreshes the credential and retries with the new token."""
        orchestrator = make_orchestrator()
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=401, body="expired")
            m.post(CODEWHISPERER_URL, body=text_stream("after refresh"))

            result, used = await orchestrator.call_with_retry(credential, _build_payload)

            assert _auth_headers(m, CODEWHISPERER_URL) == [
                "Bearer token-acct-1",
                "Bearer fresh-acct-1",
            ]

        assert result.text == "after refresh"
        assert refresh_calls == ["acct-1"]
        assert used.access_token == "fresh-acct-1"

    async def test_auth_error_switches_credential(self, pool, make_orchestrator, text_stream):
        """When the refresh fails, the call moves to another credential."""
        orchestrator = make_orchestrator(refresh_ok=False)
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=401, body="expired")
            m.post(CODEWHISPERER_URL, body=text_stream("from second"))

            result, used = await orchestrator.call_with_retry(credential, _build_payload)

            assert _auth_headers(m, CODEWHISPERER_URL) == [
                "Bearer token-acct-1",
                "Bearer token-acct-2",
            ]

        assert used.id == "acct-2"
        assert result.text == "from second"

    async def test_server_error_retried(self, pool, make_orchestrator, text_stream):
        """A 5xx is retried on the same credential."""
        orchestrator = make_orchestrator()
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=500, body="oops")
            m.post(CODEWHISPERER_URL, body=text_stream("second try"))

            result, used = await orchestrator.call_with_retry(credential, _build_payload)

        assert result.text == "second try"
        assert used.id == "acct-1"
        assert used.error_count == 0

    async def test_server_error_exhausts_retries(self, pool, make_orchestrator):
        """Persistent 5xx raises after max_retries and books one generic error."""
        orchestrator = make_orchestrator(max_retries=2)
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=500, body="oops", repeat=True)

            with pytest.raises(UpstreamServerError):
                await orchestrator.call_with_retry(credential, _build_payload)

            assert len(m.requests[("POST", URL(CODEWHISPERER_URL))]) == 2

        assert credential.error_count == 1

    async def test_quota_everywhere(self, pool, make_orchestrator):
        """Quota on every endpoint and credential raises QuotaError without generic errors."""
        orchestrator = make_orchestrator()
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=429, body="limit", repeat=True)
            m.post(AMAZONQ_URL, status=429, body="limit", repeat=True)

            with pytest.raises(QuotaError):
                await orchestrator.call_with_retry(credential, _build_payload)

        first, second = pool.get("acct-1"), pool.get("acct-2")
        assert first.quota_error_count == 2
        assert second.quota_error_count == 1
        assert first.error_count == second.error_count == 0
        assert pool.available_count == 2

    async def test_client_error_not_retried(self, pool, make_orchestrator):
        """A non-retryable 4xx fails on the first attempt."""
        orchestrator = make_orchestrator()
        credential = pool.next()

        with aioresponses() as m:
            m.post(CODEWHISPERER_URL, status=400, body="bad", repeat=True)

            with pytest.raises(UpstreamAPIError):
                await orchestrator.call_with_retry(credential, _build_payload)

            assert len(m.requests[("POST", URL(CODEWHISPERER_URL))]) == 1

        assert credential.error_count == 1

    async def test_cancellation_not_retried(self, pool, client, make_orchestrator, monkeypatch):
        """A cancelled call ends the request without blaming the credential."""
        orchestrator = make_orchestrator()
        credential = pool.next()
        calls = []

        async def cancelled(credential, payload, **kwargs):
            calls.append(credential.id)
            raise RequestCancelledError("Request cancelled")

        monkeypatch.setattr(client, "send_buffered", cancelled)

        with pytest.raises(RequestCancelledError):
            await orchestrator.call_with_retry(credential, _build_payload, cancel=asyncio.Event())

        assert calls == ["acct-1"]
        assert credential.error_count == 0
        assert credential.quota_error_count == 0
        assert pool.available_count == 2
