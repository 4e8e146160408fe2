"""CLI frontend for kirogate.

Commands:
    kirogate serve      Run the gateway
    kirogate decode     Dump the events of a captured upstream stream
    kirogate models     List the models the upstream offers an account

Example:
    $ kirogate serve --accounts accounts.json --port 5580
    $ kirogate decode capture.bin --json
"""

from kirogate.frontends.cli.main import main

__all__ = ["main"]
