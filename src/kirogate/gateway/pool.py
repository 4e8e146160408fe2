"""Rotating credential pool.

All mutation is synchronous, so it completes within a single event-loop turn
and needs no locks even with many requests in flight.
"""

import logging
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Literal

logger = logging.getLogger(__name__)

AuthMethod = Literal["social", "idc"]

# Keys of the account manager export that map onto Credential fields
_CAMEL_KEYS = {
    "accessToken": "access_token",
    "refreshToken": "refresh_token",
    "clientId": "client_id",
    "clientSecret": "client_secret",
    "authMethod": "auth_method",
    "profileArn": "profile_arn",
    "expiresAt": "expires_at",
}

# Runtime fields that survive a collaborator resync
_COUNTER_FIELDS = ("request_count", "tokens_used", "quota_error_count", "last_used")

# Dropped when a resync brings a new token
_HEALTH_FIELDS = ("is_available", "error_count", "last_error", "cooldown_until")

_SECRET_FIELDS = ("access_token", "refresh_token", "client_secret")


@dataclass
class Credential:
    """One upstream account and its runtime state.

    ``expires_at``, ``last_used`` and ``cooldown_until`` are epoch seconds.
    """

    id: str
    access_token: str
    email: str | None = None
    refresh_token: str | None = None
    client_id: str | None = None
    client_secret: str | None = None
    region: str = "us-east-1"
    auth_method: AuthMethod = "social"
    provider: str | None = None
    profile_arn: str | None = None
    expires_at: float | None = None

    # Runtime state
    is_available: bool = True
    request_count: int = 0
    tokens_used: int = 0
    error_count: int = 0
    quota_error_count: int = 0
    last_used: float = 0.0
    last_error: str | None = None
    cooldown_until: float = 0.0

    @property
    def label(self) -> str:
        """Name used in log lines."""
        return self.email or self.id

    @property
    def is_idc(self) -> bool:
        return self.auth_method == "idc"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        """Build a credential from snake_case or camelCase keys.

        Millisecond timestamps (as written by the account manager) are
        converted to seconds. Unknown keys are ignored.
        """
        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = _CAMEL_KEYS.get(key, key)
            if name in known and value is not None:
                values[name] = value

        if "id" not in values:
            raise ValueError("Credential requires an 'id'")
        if "access_token" not in values:
            raise ValueError(f"Credential {values['id']} requires an access token")

        values["id"] = str(values["id"])
        expires_at = values.get("expires_at")
        if expires_at is not None:
            expires_at = float(expires_at)
            if expires_at > 1e12:
                expires_at /= 1000.0
            values["expires_at"] = expires_at
        if values.get("auth_method") not in (None, "social", "idc"):
            values["auth_method"] = str(values["auth_method"]).lower()
        return cls(**values)


@dataclass
class CredentialPool:
    """Ordered credentials with a round-robin cursor.

    Args:
        max_error_count: Consecutive generic errors before a cooldown.
        cooldown_seconds: Cooldown length once ``max_error_count`` is hit.
    """

    max_error_count: int = 3
    cooldown_seconds: float = 60.0
    _credentials: dict[str, Credential] = field(default_factory=dict)
    _cursor: int = 0

    # ------------------------------------------------------------------
    # Membership
    # ------------------------------------------------------------------

    def add(self, credential: Credential) -> None:
        """Add a credential, replacing one with the same id."""
        self._credentials[credential.id] = credential
        logger.info("Added credential: %s", credential.label)

    def remove(self, credential_id: str) -> bool:
        removed = self._credentials.pop(credential_id, None)
        if removed is None:
            return False
        if self._cursor >= len(self._credentials):
            self._cursor = 0
        logger.info("Removed credential: %s", removed.label)
        return True

    def sync(self, credentials: list[Credential]) -> None:
        """Replace the whole set with the collaborator's current list.

        Runtime counters of ids that survive the resync are preserved. Health
        state (availability, errors, cooldown) is preserved only while the
        token is unchanged.
        """
        previous = self._credentials
        self._credentials = {}
        for credential in credentials:
            old = previous.get(credential.id)
            if old is not None:
                names = _COUNTER_FIELDS
                if (credential.access_token, credential.expires_at) == (old.access_token, old.expires_at):
                    names += _HEALTH_FIELDS
                for name in names:
                    setattr(credential, name, getattr(old, name))
            self._credentials[credential.id] = credential
        self._cursor = 0
        logger.info("Synced credential pool: %d credentials", len(self._credentials))

    def get(self, credential_id: str) -> Credential | None:
        return self._credentials.get(credential_id)

    def all(self) -> list[Credential]:
        return list(self._credentials.values())

    @property
    def size(self) -> int:
        return len(self._credentials)

    @property
    def available_count(self) -> int:
        now = time.time()
        return sum(1 for credential in self._credentials.values() if self._is_usable(credential, now))

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def next(self) -> Credential | None:
        """Next usable credential in insertion order, or None.

        Each call starts one past where the previous call stopped, so over
        many calls every usable credential is returned equally often.
        """
        credentials = list(self._credentials.values())
        if not credentials:
            return None

        now = time.time()
        for _ in range(len(credentials)):
            credential = credentials[self._cursor % len(credentials)]
            self._cursor = (self._cursor + 1) % len(credentials)
            if self._is_usable(credential, now):
                return credential
        return None

    def _is_usable(self, credential: Credential, now: float) -> bool:
        if not credential.is_available:
            return False
        if credential.cooldown_until:
            # An expired cooldown puts the credential back on probation
            return credential.cooldown_until <= now
        return credential.error_count < self.max_error_count

    def is_expiring_soon(self, credential: Credential, lookahead: float) -> bool:
        """True when the token expires within ``lookahead`` seconds."""
        if credential.expires_at is None:
            return False
        return time.time() + lookahead >= credential.expires_at

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def update(self, credential_id: str, **changes: Any) -> Credential | None:
        """Apply field changes to a credential. Unknown ids are ignored."""
        credential = self._credentials.get(credential_id)
        if credential is None:
            return None
        for name, value in changes.items():
            if not hasattr(credential, name):
                raise AttributeError(f"Credential has no field {name!r}")
            setattr(credential, name, value)
        return credential

    def mark_needs_refresh(self, credential_id: str) -> None:
        """Take a credential out of rotation until a refresh succeeds."""
        credential = self._credentials.get(credential_id)
        if credential is not None:
            credential.is_available = False
            logger.warning("Credential %s needs refresh", credential.label)

    def record_success(self, credential_id: str, tokens: int = 0) -> None:
        credential = self._credentials.get(credential_id)
        if credential is None:
            return
        credential.request_count += 1
        credential.tokens_used += tokens
        credential.error_count = 0
        credential.cooldown_until = 0.0
        credential.last_used = time.time()
        credential.last_error = None
        credential.is_available = True

    def record_error(self, credential_id: str, is_quota_error: bool = False, message: str | None = None) -> None:
        """Count a failed call against a credential.

        Quota errors are only counted; they never take the credential out of
        rotation. Generic errors cool the credential down once
        ``max_error_count`` is reached.
        """
        credential = self._credentials.get(credential_id)
        if credential is None:
            return

        now = time.time()
        credential.last_used = now
        credential.last_error = message
        if is_quota_error:
            credential.quota_error_count += 1
            logger.info(
                "Credential %s hit quota (%d so far)", credential.label, credential.quota_error_count
            )
            return

        credential.error_count += 1
        if credential.error_count >= self.max_error_count:
            credential.cooldown_until = now + self.cooldown_seconds
            logger.warning(
                "Credential %s cooling down for %.0fs after %d errors",
                credential.label,
                self.cooldown_seconds,
                credential.error_count,
            )

    def reset(self) -> None:
        """Clear errors and cooldowns on every credential."""
        for credential in self._credentials.values():
            credential.is_available = True
            credential.error_count = 0
            credential.cooldown_until = 0.0
            credential.last_error = None
        self._cursor = 0

    def snapshot(self) -> list[dict[str, Any]]:
        """Admin view of every credential with secrets removed."""
        now = time.time()
        result = []
        for credential in self._credentials.values():
            data = asdict(credential)
            for name in _SECRET_FIELDS:
                data.pop(name, None)
            data["is_usable"] = self._is_usable(credential, now)
            result.append(data)
        return result
