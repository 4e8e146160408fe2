"""Token refresh against the Kiro auth services.

Social logins (GitHub/Google) refresh through the Kiro desktop auth service;
IdC (Builder ID) logins refresh through the regional AWS OIDC token endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import aiohttp

from kirogate.gateway.pool import Credential
from kirogate.gateway.refresh import RefreshResult

logger = logging.getLogger(__name__)

KIRO_AUTH_ENDPOINT = "https://prod.us-east-1.auth.desktop.kiro.dev"
OIDC_TOKEN_URL = "https://oidc.{region}.amazonaws.com/token"
SOCIAL_USER_AGENT = "kiro-account-manager/1.0.0"

# Assumed lifetime when the auth service omits expiresIn
DEFAULT_EXPIRES_IN = 3600


def refresh_request(credential: Credential) -> tuple[str, dict[str, str], dict[str, Any]]:
    """URL, headers and JSON body of the refresh call for a credential."""
    if credential.is_idc:
        url = OIDC_TOKEN_URL.format(region=credential.region or "us-east-1")
        body = {
            "clientId": credential.client_id,
            "clientSecret": credential.client_secret,
            "refreshToken": credential.refresh_token,
            "grantType": "refresh_token",
        }
        return url, {"Content-Type": "application/json"}, body

    headers = {"Content-Type": "application/json", "User-Agent": SOCIAL_USER_AGENT}
    return f"{KIRO_AUTH_ENDPOINT}/refreshToken", headers, {"refreshToken": credential.refresh_token}


async def refresh_credential(session: aiohttp.ClientSession, credential: Credential) -> RefreshResult:
    """Exchange a credential's refresh token for a new access token.

    Never raises for HTTP or transport failures; those come back as an
    unsuccessful RefreshResult.
    """
    if not credential.refresh_token:
        return RefreshResult(success=False, error="No refresh token")
    if credential.is_idc and not (credential.client_id and credential.client_secret):
        return RefreshResult(success=False, error="IdC refresh requires clientId and clientSecret")

    url, headers, body = refresh_request(credential)
    kind = "OIDC" if credential.is_idc else "Social"
    try:
        async with session.post(url, json=body, headers=headers) as response:
            if response.status != 200:
                error_text = await response.text()
                logger.error("[%s] Refresh failed: %d - %s", kind, response.status, error_text[:500])
                return RefreshResult(success=False, error=f"HTTP {response.status}: {error_text}")
            data = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
        logger.error("[%s] Refresh error: %s", kind, e)
        return RefreshResult(success=False, error=str(e))

    access_token = data.get("accessToken") if isinstance(data, dict) else None
    if not access_token:
        return RefreshResult(success=False, error="Refresh response carried no accessToken")

    expires_in = data.get("expiresIn") or DEFAULT_EXPIRES_IN
    logger.info("[%s] Token refreshed, expires in %ss", kind, expires_in)
    return RefreshResult(
        success=True,
        access_token=access_token,
        refresh_token=data.get("refreshToken") or credential.refresh_token,
        expires_at=time.time() + float(expires_in),
    )
