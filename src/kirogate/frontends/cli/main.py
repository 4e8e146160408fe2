"""CLI entry point."""

from __future__ import annotations

import asyncio
import sys


def main() -> None:
    """Main entry point for the CLI."""
    import importlib.util

    if importlib.util.find_spec("rich_click") is None:
        print("CLI dependencies not installed. Run: pip install kirogate")
        sys.exit(1)

    _run_cli()


def _run_cli() -> None:
    """CLI definition and runner."""
    import rich_click as click

    # Configure rich-click styling
    click.rich_click.USE_RICH_MARKUP = True
    click.rich_click.USE_MARKDOWN = True
    click.rich_click.SHOW_ARGUMENTS = True
    click.rich_click.GROUP_ARGUMENTS_OPTIONS = True
    click.rich_click.STYLE_ERRORS_SUGGESTION = "magenta italic"
    click.rich_click.ERRORS_SUGGESTION = "Try running '--help' for more information."
    click.rich_click.ERRORS_EPILOGUE = ""
    click.rich_click.MAX_WIDTH = 100

    @click.group()
    @click.version_option(package_name="kirogate")
    def cli():
        """kirogate - OpenAI and Anthropic compatible gateway for Kiro.

        **Commands:**

            kirogate serve     Run the gateway

            kirogate decode    Dump the events of a captured upstream stream

            kirogate models    List the models the upstream offers an account
        """
        pass

    @cli.command()
    @click.option("--accounts", "-a", "accounts_file", default=None, help="Credentials file (JSON or YAML)")
    @click.option("--config", "-c", "config_file", default=None, help="YAML config file")
    @click.option("--host", default=None, help="Host to bind to (default: 127.0.0.1)")
    @click.option("--port", "-p", type=int, default=None, help="Port to bind to (default: 5580)")
    @click.option("--api-key", default=None, help="Key clients must send")
    @click.option(
        "--preferred-endpoint",
        type=click.Choice(["codewhisperer", "amazonq"]),
        default=None,
        help="Endpoint tried first",
    )
    @click.option("--debug-dir", default=None, help="Directory for request/response debug dumps")
    @click.option("--log-level", default=None, help="DEBUG, INFO, WARNING or ERROR")
    @click.option("--log-format", type=click.Choice(["text", "json"]), default=None, help="Log output format")
    def serve(
        accounts_file: str | None,
        config_file: str | None,
        host: str | None,
        port: int | None,
        api_key: str | None,
        preferred_endpoint: str | None,
        debug_dir: str | None,
        log_level: str | None,
        log_format: str | None,
    ):
        """Run the gateway.

        Options override KIROGATE_* environment variables, which override
        the config file.

        **Examples:**

            kirogate serve --accounts accounts.json

            kirogate serve -a accounts.yaml -p 8080 --api-key secret

            KIROGATE_CONFIG=gateway.yaml kirogate serve
        """
        from kirogate.compose import run_gateway
        from kirogate.frontends.cli.output import error_exit
        from kirogate.logging_config import configure_logging

        try:
            configure_logging(level=log_level, format=log_format)  # type: ignore[arg-type]
            asyncio.run(
                run_gateway(
                    accounts_file=accounts_file,
                    config_file=config_file,
                    host=host,
                    port=port,
                    api_key=api_key,
                    preferred_endpoint=preferred_endpoint,
                    debug_dir=debug_dir,
                )
            )
        except KeyboardInterrupt:
            pass
        except (OSError, ValueError) as e:
            error_exit(str(e))

    @cli.command()
    @click.argument("file", type=click.Path(exists=True, dir_okay=False))
    @click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
    @click.option("--verify", is_flag=True, help="Verify frame checksums")
    def decode(file: str, json_output: bool, verify: bool):
        """Dump the events of a captured upstream event stream.

        **Examples:**

            kirogate decode capture.bin

            kirogate decode capture.bin --json
        """
        from pathlib import Path

        from kirogate.frontends.cli.output import error_exit, event_to_dict, format_event, output_json
        from kirogate.gateway.clients.eventstream import FrameDecoder
        from kirogate.gateway.errors import GatewayError

        decoder = FrameDecoder(verify_checksums=verify)
        try:
            events = decoder.feed(Path(file).read_bytes())
            events.extend(decoder.finish())
        except GatewayError as e:
            error_exit(f"{type(e).__name__}: {e}")

        if json_output:
            output_json([event_to_dict(event) for event in events])
            return
        for event in events:
            click.echo(format_event(event))

    @cli.command()
    @click.option("--accounts", "-a", "accounts_file", required=True, help="Credentials file (JSON or YAML)")
    @click.option("--account", "account_id", default=None, help="Account id (default: first)")
    @click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
    def models(accounts_file: str, account_id: str | None, json_output: bool):
        """List the models the upstream offers an account.

        **Examples:**

            kirogate models --accounts accounts.json
        """
        from kirogate.compose import load_credentials
        from kirogate.frontends.cli.output import error_exit, output_json, print_table
        from kirogate.gateway.clients.kiro_client import KiroClient

        try:
            credentials = load_credentials(accounts_file)
        except (OSError, ValueError) as e:
            error_exit(str(e))
        credential = next(
            (c for c in credentials if account_id is None or c.id == account_id), None
        )
        if credential is None:
            error_exit(f"Account not found: {account_id or '(none loaded)'}")

        async def fetch() -> list:
            async with KiroClient() as client:
                return await client.list_models(credential)

        catalogue = asyncio.run(fetch())
        if json_output:
            output_json(catalogue)
            return
        if not catalogue:
            error_exit("No models returned (see log for the upstream error)")
        rows = [
            [str(model.get("modelId", "")), str(model.get("modelName", model.get("description", "")))]
            for model in catalogue
        ]
        print_table(["MODEL ID", "NAME"], rows, title=f"Models for {credential.label}")

    cli()


if __name__ == "__main__":
    main()
