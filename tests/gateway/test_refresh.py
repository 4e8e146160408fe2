"""Tests for single-flight token refresh."""

import asyncio
import time

from kirogate.gateway.refresh import RefreshResult, TokenRefresher


class TestTokenRefresher:
    """Tests for TokenRefresher.refresh()."""

    async def test_concurrent_refreshes_share_one_call(self, pool):
        """Many callers refreshing the same credential trigger one callback."""
        calls = []
        release = asyncio.Event()

        async def callback(credential):
            calls.append(credential.id)
            await release.wait()
            return RefreshResult(success=True, access_token="new", expires_at=time.time() + 3600)

        refresher = TokenRefresher(pool=pool, callback=callback)
        credential = pool.get("acct-1")

        tasks = [asyncio.create_task(refresher.refresh(credential)) for _ in range(5)]
        await asyncio.sleep(0)
        assert refresher.in_flight("acct-1")
        release.set()
        results = await asyncio.gather(*tasks)

        assert calls == ["acct-1"]
        assert results == [True] * 5
        assert pool.get("acct-1").access_token == "new"
        assert not refresher.in_flight("acct-1")

    async def test_different_credentials_refresh_independently(self, pool):
        calls = []

        async def callback(credential):
            calls.append(credential.id)
            return RefreshResult(success=True, access_token=f"new-{credential.id}")

        refresher = TokenRefresher(pool=pool, callback=callback)

        await asyncio.gather(
            refresher.refresh(pool.get("acct-1")),
            refresher.refresh(pool.get("acct-2")),
        )

        assert sorted(calls) == ["acct-1", "acct-2"]

    async def test_keeps_refresh_token_when_not_rotated(self, pool):
        async def callback(credential):
            return RefreshResult(success=True, access_token="new")

        await TokenRefresher(pool=pool, callback=callback).refresh(pool.get("acct-1"))

        assert pool.get("acct-1").refresh_token == "refresh-acct-1"

    async def test_failure_marks_credential(self, pool):
        """A failed refresh takes the credential out of rotation."""

        async def callback(credential):
            return RefreshResult(success=False, error="invalid_grant")

        ok = await TokenRefresher(pool=pool, callback=callback).refresh(pool.get("acct-1"))

        assert ok is False
        assert pool.get("acct-1").is_available is False

    async def test_callback_exception_is_failure(self, pool):
        async def callback(credential):
            raise RuntimeError("auth service down")

        ok = await TokenRefresher(pool=pool, callback=callback).refresh(pool.get("acct-1"))

        assert ok is False
        assert pool.get("acct-1").is_available is False

    async def test_without_callback(self, pool):
        assert await TokenRefresher(pool=pool).refresh(pool.get("acct-1")) is False
        assert pool.get("acct-1").is_available is True

    async def test_update_hook_receives_credential(self, pool):
        updated = []

        async def callback(credential):
            return RefreshResult(success=True, access_token="new")

        async def on_update(credential):
            updated.append((credential.id, credential.access_token))

        refresher = TokenRefresher(pool=pool, callback=callback, on_credential_update=on_update)
        await refresher.refresh(pool.get("acct-2"))

        assert updated == [("acct-2", "new")]
