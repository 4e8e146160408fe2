"""kirogate - OpenAI and Anthropic compatible gateway in front of Kiro.

Layers:
    gateway/    Credential pool, upstream client, translators, HTTP server
    compose     Wiring from config files, environment and CLI arguments
    frontends/  The ``kirogate`` command line

Quick Start:
    >>> from kirogate.compose import create_gateway
    >>> server = await create_gateway(accounts_file="accounts.json")
    >>> await server.serve()
"""

__version__ = "1.0.0"
