"""Upstream endpoint table.

Two interchangeable upstream services accept the same conversation payload.
They differ only in URL, the per-message origin tag and the target header.
"""

from dataclasses import dataclass

CODEWHISPERER = "codewhisperer"
AMAZONQ = "amazonq"


@dataclass(frozen=True)
class Endpoint:
    """One upstream endpoint."""

    url: str
    origin: str
    amz_target: str
    name: str
    key: str  # preference value selecting this endpoint


ENDPOINTS: tuple[Endpoint, ...] = (
    Endpoint(
        url="https://codewhisperer.us-east-1.amazonaws.com/generateAssistantResponse",
        origin="AI_EDITOR",
        amz_target="AmazonCodeWhispererStreamingService.GenerateAssistantResponse",
        name="CodeWhisperer",
        key=CODEWHISPERER,
    ),
    Endpoint(
        url="https://q.us-east-1.amazonaws.com/generateAssistantResponse",
        origin="CLI",
        amz_target="AmazonQDeveloperStreamingService.SendMessage",
        name="AmazonQ",
        key=AMAZONQ,
    ),
)

MODELS_URL = "https://codewhisperer.us-east-1.amazonaws.com/ListAvailableModels"


def ordered_endpoints(preferred: str | None = None) -> list[Endpoint]:
    """Endpoints with the preferred one first, the rest in declared order.

    Unknown preference values leave the declared order untouched.
    """
    endpoints = list(ENDPOINTS)
    if not preferred:
        return endpoints
    # sort is stable, so the others keep their relative order
    endpoints.sort(key=lambda endpoint: endpoint.key != preferred.lower())
    return endpoints


def endpoint_keys() -> list[str]:
    """Valid preference values, in declared order."""
    return [endpoint.key for endpoint in ENDPOINTS]
