"""Tests for token refresh against the auth services."""

import time

import aiohttp
import pytest
from aioresponses import aioresponses
from yarl import URL

from kirogate.auth import (
    KIRO_AUTH_ENDPOINT,
    SOCIAL_USER_AGENT,
    refresh_credential,
    refresh_request,
)

SOCIAL_URL = f"{KIRO_AUTH_ENDPOINT}/refreshToken"
OIDC_URL = "https://oidc.eu-west-1.amazonaws.com/token"


@pytest.fixture
async def session():
    session = aiohttp.ClientSession()
    yield session
    await session.close()


@pytest.fixture
def idc_credential(make_credential):
    return make_credential(
        "idc-1",
        auth_method="idc",
        region="eu-west-1",
        client_id="client",
        client_secret="shh",
    )


class TestRefreshRequest:
    def test_social(self, make_credential):
        url, headers, body = refresh_request(make_credential())

        assert url == SOCIAL_URL
        assert headers["User-Agent"] == SOCIAL_USER_AGENT
        assert body == {"refreshToken": "refresh-acct-1"}

    def test_idc(self, idc_credential):
        url, headers, body = refresh_request(idc_credential)

        assert url == OIDC_URL
        assert body == {
            "clientId": "client",
            "clientSecret": "shh",
            "refreshToken": "refresh-idc-1",
            "grantType": "refresh_token",
        }


class TestRefreshCredential:
    async def test_social_success(self, session, make_credential):
        with aioresponses() as m:
            m.post(SOCIAL_URL, payload={"accessToken": "new", "refreshToken": "rotated", "expiresIn": 600})

            result = await refresh_credential(session, make_credential())

        assert result.success
        assert result.access_token == "new"
        assert result.refresh_token == "rotated"
        assert time.time() + 590 < result.expires_at <= time.time() + 600

    async def test_idc_success_defaults(self, session, idc_credential):
        """Missing expiresIn and refreshToken fall back to defaults."""
        with aioresponses() as m:
            m.post(OIDC_URL, payload={"accessToken": "new"})

            result = await refresh_credential(session, idc_credential)

            sent = m.requests[("POST", URL(OIDC_URL))][0].kwargs["json"]
            assert sent["grantType"] == "refresh_token"

        assert result.success
        assert result.refresh_token == "refresh-idc-1"
        assert result.expires_at > time.time() + 3500

    async def test_http_error(self, session, make_credential):
        with aioresponses() as m:
            m.post(SOCIAL_URL, status=400, body="invalid_grant")

            result = await refresh_credential(session, make_credential())

        assert not result.success
        assert "400" in result.error

    async def test_missing_access_token(self, session, make_credential):
        with aioresponses() as m:
            m.post(SOCIAL_URL, payload={"expiresIn": 600})

            result = await refresh_credential(session, make_credential())

        assert not result.success

    async def test_transport_error(self, session, make_credential):
        with aioresponses() as m:
            m.post(SOCIAL_URL, exception=aiohttp.ClientConnectionError("refused"))

            result = await refresh_credential(session, make_credential())

        assert not result.success
        assert "refused" in result.error

    async def test_no_refresh_token(self, session, make_credential):
        result = await refresh_credential(session, make_credential(refresh_token=None))

        assert result.error == "No refresh token"

    async def test_idc_needs_client_credentials(self, session, make_credential):
        result = await refresh_credential(session, make_credential(auth_method="idc"))

        assert not result.success
        assert "clientId" in result.error
