"""Composition helpers for running the gateway.

These helpers resolve configuration and credentials and wire up a
GatewayServer without touching the individual layers.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import MISSING, fields
from pathlib import Path
from typing import Any

import yaml

from kirogate.auth import refresh_credential
from kirogate.gateway.pool import Credential, CredentialPool
from kirogate.gateway.refresh import RefreshResult
from kirogate.gateway.server import GatewayConfig, GatewayServer

logger = logging.getLogger(__name__)

ENV_PREFIX = "KIROGATE_"
ENV_CONFIG_KEY = "KIROGATE_CONFIG"
ENV_ACCOUNTS_KEY = "KIROGATE_ACCOUNTS"

_TRUE_VALUES = {"1", "true", "yes", "on"}


async def _load_config_file(config_file: str | None, env_config_key: str = ENV_CONFIG_KEY) -> dict[str, Any]:
    """Read the YAML config file named by the argument or the environment."""
    config_path = config_file or os.environ.get(env_config_key)
    if not config_path:
        return {}
    try:
        content = await asyncio.to_thread(Path(config_path).read_text)
    except FileNotFoundError:
        logger.warning("Config file not found: %s", config_path)
        return {}
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")
    return data


def _coerce(value: Any, default: Any) -> Any:
    """Convert an env or file value to the type of the field default."""
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in _TRUE_VALUES
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value if value is None else str(value)


async def _load_gateway_config(config_file: str | None = None, **overrides: Any) -> GatewayConfig:
    """Build a GatewayConfig.

    Each field resolves with priority: argument > KIROGATE_<FIELD> env var >
    config file > default. Arguments left as None do not override.

    Args:
        config_file: Path to a YAML config (or KIROGATE_CONFIG env var).
        **overrides: GatewayConfig fields, usually from CLI options.
    """
    file_config = await _load_config_file(config_file)
    values: dict[str, Any] = {}

    for f in fields(GatewayConfig):
        default = f.default if f.default is not MISSING else None
        arg = overrides.get(f.name)
        if arg is not None:
            values[f.name] = arg
            continue
        env_val = os.environ.get(f"{ENV_PREFIX}{f.name.upper()}")
        if env_val:
            values[f.name] = _coerce(env_val, default)
            continue
        file_val = file_config.get(f.name)
        if file_val is not None:
            values[f.name] = _coerce(file_val, default)

    return GatewayConfig(**values)


def _parse_accounts(data: Any, source: str) -> list[Credential]:
    if isinstance(data, dict):
        data = data.get("accounts", [])
    if not isinstance(data, list):
        raise ValueError(f"{source}: expected a list of accounts")

    credentials = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f"{source}: every account must be a mapping")
        # Account manager exports nest the tokens under "credentials"
        nested = item.get("credentials")
        if isinstance(nested, dict):
            item = {**{k: v for k, v in item.items() if k != "credentials"}, **nested}
        credentials.append(Credential.from_dict(item))
    return credentials


def load_credentials(path: str | Path) -> list[Credential]:
    """Load credentials from a JSON or YAML file.

    Accepts a list of accounts or a mapping with an ``accounts`` list;
    keys may be snake_case or the account manager's camelCase.
    """
    path = Path(path)
    content = path.read_text()
    if path.suffix.lower() in (".yaml", ".yml"):
        data = yaml.safe_load(content)
    else:
        data = json.loads(content)
    credentials = _parse_accounts(data, str(path))
    logger.info("Loaded %d credentials from %s", len(credentials), path)
    return credentials


async def create_gateway(
    accounts_file: str | None = None,
    config_file: str | None = None,
    **overrides: Any,
) -> GatewayServer:
    """Create a gateway server ready to ``serve()``.

    Configuration priority:
    1. Function arguments (highest)
    2. Environment variables (KIROGATE_*)
    3. Config file (if given or KIROGATE_CONFIG is set)

    Args:
        accounts_file: Credentials file (or KIROGATE_ACCOUNTS env var, or
            ``accounts_file`` in the config file).
        config_file: Path to YAML config.
        **overrides: GatewayConfig fields.

    Example:
        >>> server = await create_gateway(accounts_file="accounts.json", port=5580)
        >>> await server.serve()
    """
    file_config = await _load_config_file(config_file)
    config = await _load_gateway_config(config_file, **overrides)

    accounts_path = accounts_file or os.environ.get(ENV_ACCOUNTS_KEY) or file_config.get("accounts_file")
    pool = CredentialPool(
        max_error_count=int(file_config.get("max_error_count", 3)),
        cooldown_seconds=float(file_config.get("cooldown_seconds", 60.0)),
    )
    if accounts_path:
        credentials = await asyncio.to_thread(load_credentials, accounts_path)
    else:
        credentials = _parse_accounts(file_config.get("accounts", []), "config file")
    for credential in credentials:
        pool.add(credential)
    if not pool.size:
        logger.warning("No credentials loaded; every chat request will get 503")

    server: GatewayServer

    async def refresh(credential: Credential) -> RefreshResult:
        return await refresh_credential(server.client.session, credential)

    server = GatewayServer(config=config, pool=pool, refresh_callback=refresh)
    return server


async def run_gateway(
    accounts_file: str | None = None,
    config_file: str | None = None,
    **overrides: Any,
) -> None:
    """Create and run a gateway until cancelled."""
    server = await create_gateway(accounts_file, config_file, **overrides)
    try:
        await server.serve()
    finally:
        await server.shutdown()
