"""Request signature commands."""

import sys
from typing import Optional

import click

from serveflow.cli.output.formatters import (
    format_json,
    format_key_value,
    print_error,
    print_success,
)
from serveflow.core.exceptions import SignatureError
from serveflow.security.receiver import Receiver, body_hash, sign


def _read_body(body: Optional[str], body_file: Optional[str]) -> str:
    if body is not None and body_file is not None:
        raise click.UsageError("Pass either --body or --body-file, not both")
    if body_file is not None:
        with open(body_file, encoding="utf-8") as f:
            return f.read()
    if body is not None:
        return body
    if not sys.stdin.isatty():
        return sys.stdin.read()
    return ""


@click.command(name="sign")
@click.option("--body", help="Request body to sign (default: read from stdin)")
@click.option(
    "--body-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Read the request body from a file",
)
@click.option("--url", required=True, help="Destination url, stored as the token subject")
@click.option(
    "--key",
    envvar="QSTASH_CURRENT_SIGNING_KEY",
    required=True,
    help="Signing key (default: QSTASH_CURRENT_SIGNING_KEY)",
)
@click.option(
    "--expires-in",
    type=int,
    default=300,
    show_default=True,
    help="Seconds the token stays valid",
)
@click.pass_context
def sign_command(
    ctx: click.Context,
    body: Optional[str],
    body_file: Optional[str],
    url: str,
    key: str,
    expires_in: int,
) -> None:
    """
    Issue a signature token for a request body.

    The token can be sent in the Upstash-Signature header to call a workflow
    endpoint locally without going through the queue service.

    Examples:

        # Sign a JSON body for a local endpoint
        serveflow sign --url http://localhost:8000/api/workflow --body '{"order": 1}'

        # Sign a body read from stdin
        cat payload.json | serveflow sign --url http://localhost:8000/api/workflow
    """
    payload = _read_body(body, body_file)
    token = sign(payload, url, key, expires_in=expires_in)

    if ctx.obj and ctx.obj.get("output") == "json":
        format_json({"signature": token, "url": url, "body_hash": body_hash(payload)})
        return
    click.echo(token)


@click.command(name="verify")
@click.option("--signature", required=True, help="Token from the Upstash-Signature header")
@click.option("--body", help="Request body (default: read from stdin)")
@click.option(
    "--body-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Read the request body from a file",
)
@click.option("--url", help="Url the request was sent to, checked against the token subject")
@click.option(
    "--current-signing-key",
    envvar="QSTASH_CURRENT_SIGNING_KEY",
    help="Current signing key (default: QSTASH_CURRENT_SIGNING_KEY)",
)
@click.option(
    "--next-signing-key",
    envvar="QSTASH_NEXT_SIGNING_KEY",
    help="Next signing key (default: QSTASH_NEXT_SIGNING_KEY)",
)
@click.option("--region", help="Region header of the request, for multi-region setups")
@click.option(
    "--clock-tolerance",
    type=int,
    default=0,
    show_default=True,
    help="Seconds of leeway when checking token expiry",
)
@click.pass_context
def verify_command(
    ctx: click.Context,
    signature: str,
    body: Optional[str],
    body_file: Optional[str],
    url: Optional[str],
    current_signing_key: Optional[str],
    next_signing_key: Optional[str],
    region: Optional[str],
    clock_tolerance: int,
) -> None:
    """
    Verify a signature token against a request body.

    Keys are taken from the options or, in multi-region setups, from the
    region-prefixed environment variables.

    Examples:

        serveflow verify --signature "$TOKEN" --body '{"order": 1}'

        serveflow verify --signature "$TOKEN" --body-file payload.json \\
            --url https://example.com/api/workflow --region us-east-1
    """
    payload = _read_body(body, body_file)
    receiver = Receiver(current_signing_key=current_signing_key, next_signing_key=next_signing_key)

    try:
        receiver.verify(
            signature=signature,
            body=payload,
            url=url,
            clock_tolerance=clock_tolerance,
            region=region,
        )
    except SignatureError as e:
        print_error(f"Signature is not valid: {e}")
        raise click.exceptions.Exit(1)

    if ctx.obj and ctx.obj.get("output") == "json":
        format_json({"valid": True, "url": url, "body_hash": body_hash(payload)})
        return

    print_success("Signature is valid")
    format_key_value({"url": url or "not checked", "body_hash": body_hash(payload)})
