"""Gateway statistics: totals, breakdowns and a ring buffer of recent requests."""

import time
from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class RequestLog:
    """One finished request, as shown by the admin log endpoint."""

    timestamp: float
    path: str
    model: str
    credential_id: str | None
    input_tokens: int
    output_tokens: int
    response_time: float
    success: bool
    endpoint: str | None = None
    error: str | None = None


@dataclass
class AccountStats:
    requests: int = 0
    errors: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_response_time: float = 0.0
    last_used: float = 0.0

    @property
    def tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def avg_response_time(self) -> float:
        return self.total_response_time / self.requests if self.requests else 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["tokens"] = self.tokens
        data["avg_response_time"] = round(self.avg_response_time, 3)
        return data


@dataclass
class EndpointStats:
    requests: int = 0
    successes: int = 0
    failures: int = 0
    quota_errors: int = 0


@dataclass
class ModelStats:
    requests: int = 0
    tokens: int = 0


@dataclass
class GatewayStats:
    """Monotonic counters for one gateway process.

    Counters only ever grow. ``recent_requests`` keeps the last
    ``max_recent`` entries.
    """

    max_recent: int = 100
    total_requests: int = 0
    success_requests: int = 0
    failed_requests: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    start_time: float = field(default_factory=time.time)
    accounts: dict[str, AccountStats] = field(default_factory=dict)
    endpoints: dict[str, EndpointStats] = field(default_factory=dict)
    models: dict[str, ModelStats] = field(default_factory=dict)
    recent_requests: deque[RequestLog] = field(init=False)

    def __post_init__(self) -> None:
        self.recent_requests = deque(maxlen=self.max_recent)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def uptime(self) -> float:
        return time.time() - self.start_time

    def record_started(self) -> None:
        self.total_requests += 1

    def record_finished(self, entry: RequestLog) -> None:
        """Fold a finished request into every counter."""
        if entry.success:
            self.success_requests += 1
            self.input_tokens += entry.input_tokens
            self.output_tokens += entry.output_tokens
        else:
            self.failed_requests += 1

        if entry.credential_id:
            account = self.accounts.setdefault(entry.credential_id, AccountStats())
            account.requests += 1
            account.total_response_time += entry.response_time
            account.last_used = entry.timestamp
            if entry.success:
                account.input_tokens += entry.input_tokens
                account.output_tokens += entry.output_tokens
            else:
                account.errors += 1

        if entry.success:
            model = self.models.setdefault(entry.model, ModelStats())
            model.requests += 1
            model.tokens += entry.input_tokens + entry.output_tokens

        self.recent_requests.append(entry)

    def record_endpoint(self, name: str, outcome: str) -> None:
        """Count one attempt against an endpoint.

        ``outcome`` is one of ``success``, ``quota`` or ``failure``.
        """
        endpoint = self.endpoints.setdefault(name, EndpointStats())
        endpoint.requests += 1
        if outcome == "success":
            endpoint.successes += 1
        elif outcome == "quota":
            endpoint.quota_errors += 1
            endpoint.failures += 1
        else:
            endpoint.failures += 1

    def resize(self, max_recent: int) -> None:
        """Change the ring buffer capacity, keeping the newest entries."""
        self.max_recent = max_recent
        self.recent_requests = deque(self.recent_requests, maxlen=max_recent)

    def recent(self, limit: int) -> list[dict[str, Any]]:
        return [asdict(entry) for entry in list(self.recent_requests)[-limit:]]

    def summary(self) -> dict[str, Any]:
        """Headline counters, as embedded in the health response."""
        return {
            "total_requests": self.total_requests,
            "success_requests": self.success_requests,
            "failed_requests": self.failed_requests,
            "total_tokens": self.total_tokens,
            "uptime": round(self.uptime, 3),
        }

    def to_dict(self, recent_limit: int = 50) -> dict[str, Any]:
        return {
            **self.summary(),
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "start_time": self.start_time,
            "account_stats": {key: value.to_dict() for key, value in self.accounts.items()},
            "endpoint_stats": {key: asdict(value) for key, value in self.endpoints.items()},
            "model_stats": {key: asdict(value) for key, value in self.models.items()},
            "recent_requests": self.recent(recent_limit),
        }
