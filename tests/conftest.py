"""Pytest configuration and fixtures."""

from collections.abc import Callable
from typing import Any

import pytest

from kirogate.gateway.clients.eventstream import encode_frame
from kirogate.gateway.pool import Credential, CredentialPool


def event_frame(event_type: str, payload: dict[str, Any]) -> bytes:
    """One upstream frame carrying ``payload`` under an :event-type header."""
    return encode_frame(
        payload,
        {
            ":event-type": event_type,
            ":content-type": "application/json",
            ":message-type": "event",
        },
    )


@pytest.fixture
def make_credential() -> Callable[..., Credential]:
    """Factory for credentials with a predictable access token."""

    def factory(credential_id: str = "acct-1", **overrides: Any) -> Credential:
        values: dict[str, Any] = {
            "id": credential_id,
            "access_token": f"token-{credential_id}",
            "email": f"{credential_id}@example.com",
            "refresh_token": f"refresh-{credential_id}",
        }
        values.update(overrides)
        return Credential(**values)

    return factory


@pytest.fixture
def pool(make_credential) -> CredentialPool:
    """Pool with two healthy credentials."""
    pool = CredentialPool()
    pool.add(make_credential("acct-1"))
    pool.add(make_credential("acct-2"))
    return pool


@pytest.fixture
def kiro_stream() -> Callable[..., bytes]:
    """Build an upstream response body.

    Arguments are ``(event_type, payload)`` pairs; a usage frame and a stop
    frame are appended unless ``usage=None`` / ``stop=False``.
    """

    def build(
        *events: tuple[str, dict[str, Any]],
        usage: tuple[int, int] | None = (5, 7),
        stop: bool = True,
    ) -> bytes:
        frames = [event_frame(event_type, payload) for event_type, payload in events]
        if usage is not None:
            frames.append(
                event_frame(
                    "messageMetadataEvent",
                    {"tokenUsage": {"uncachedInputTokens": usage[0], "outputTokens": usage[1]}},
                )
            )
        if stop:
            frames.append(event_frame("messageStopEvent", {}))
        return b"".join(frames)

    return build


@pytest.fixture
def text_stream(kiro_stream) -> Callable[..., bytes]:
    """Upstream body that answers with the given text fragments."""

    def build(*texts: str, usage: tuple[int, int] | None = (5, 7)) -> bytes:
        return kiro_stream(*(("assistantResponseEvent", {"content": t}) for t in texts), usage=usage)

    return build


@pytest.fixture
def frame() -> Callable[[str, dict[str, Any]], bytes]:
    """The ``event_frame`` builder, for tests that assemble frames by hand."""
    return event_frame
