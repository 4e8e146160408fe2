"""kirogate gateway - OpenAI and Anthropic APIs in front of Kiro.

Components:
- Server: HTTP routes, streaming and buffered response assembly
- Orchestrator: credential acquisition, retry and failover
- Pool: rotating credentials with outcome bookkeeping
- Clients: Kiro endpoint client and event-stream frame decoder
- Transforms: API format conversion in both directions

Usage (via compose.py convenience functions):
    from kirogate.compose import run_gateway
    import asyncio

    asyncio.run(run_gateway(accounts_file="accounts.json"))

Usage (direct):
    from kirogate.gateway import Credential, CredentialPool, GatewayConfig, GatewayServer

    async def main():
        pool = CredentialPool()
        pool.add(Credential(id="main", access_token="..."))
        server = GatewayServer(config=GatewayConfig(port=5580), pool=pool)
        await server.serve()
"""

from kirogate.gateway.errors import ERROR_TYPE_MAP, ErrorKind, GatewayError
from kirogate.gateway.orchestrator import Orchestrator
from kirogate.gateway.pool import Credential, CredentialPool
from kirogate.gateway.refresh import RefreshResult, TokenRefresher
from kirogate.gateway.server import GatewayConfig, GatewayServer
from kirogate.gateway.stats import GatewayStats
from kirogate.gateway.tracing import RequestTracer

__all__ = [
    "ERROR_TYPE_MAP",
    "Credential",
    "CredentialPool",
    "ErrorKind",
    "GatewayConfig",
    "GatewayError",
    "GatewayServer",
    "GatewayStats",
    "Orchestrator",
    "RefreshResult",
    "RequestTracer",
    "TokenRefresher",
]
