"""serveflow CLI - Sign and verify workflow requests, inspect the environment."""

import click
from loguru import logger

from serveflow import __version__


@click.group()
@click.version_option(version=__version__, prog_name="serveflow")
@click.option(
    "--output",
    type=click.Choice(["plain", "json"], case_sensitive=False),
    default="plain",
    help="Output format (default: plain)",
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose logging",
)
@click.pass_context
def main(ctx: click.Context, output: str, verbose: bool) -> None:
    """
    serveflow CLI - Tools for queue-driven workflow endpoints.

    Examples:

        # Issue a signature to call a local endpoint directly
        serveflow sign --url http://localhost:8000/api/workflow --body '{"id": 1}'

        # Check a signature captured from a request
        serveflow verify --signature "$TOKEN" --body-file body.json

        # Check which credentials are configured
        serveflow env

    Configuration:

        Keys and tokens are read from environment variables
        (QSTASH_TOKEN, QSTASH_CURRENT_SIGNING_KEY, QSTASH_NEXT_SIGNING_KEY,
        QSTASH_REGION, ...) unless passed as options.
    """
    if verbose:
        logger.enable("serveflow")
        logger.info("Verbose logging enabled")
    else:
        logger.disable("serveflow")

    ctx.ensure_object(dict)
    ctx.obj["output"] = output
    ctx.obj["verbose"] = verbose


# Import and register commands
from serveflow.cli.commands.env import env_command  # noqa: E402
from serveflow.cli.commands.signature import sign_command, verify_command  # noqa: E402

main.add_command(sign_command)
main.add_command(verify_command)
main.add_command(env_command)


# Export main for entry point
__all__ = ["main"]
