"""Environment inspection command."""

import os
from typing import Any, Dict, List, Mapping

import click

from serveflow.cli.output.formatters import (
    format_json,
    format_table,
    mask,
    print_error,
    print_info,
    print_success,
    print_warning,
)
from serveflow.constants import SUPPORTED_REGIONS
from serveflow.security.regions import normalize_region


def _credential_rows(env: Mapping[str, str], prefix: str = "") -> Dict[str, Dict[str, Any]]:
    rows: Dict[str, Dict[str, Any]] = {}
    for name in (
        "QSTASH_URL",
        "QSTASH_TOKEN",
        "QSTASH_CURRENT_SIGNING_KEY",
        "QSTASH_NEXT_SIGNING_KEY",
    ):
        variable = f"{prefix}{name}"
        value = env.get(variable)
        shown = value if name == "QSTASH_URL" else mask(value)
        rows[variable] = {"status": "valid" if value else "missing", "value": shown if value else None}
    return rows


def inspect_environment(env: Mapping[str, str]) -> Dict[str, Any]:
    """
    Work out which credentials a served workflow would resolve.

    Returns:
        Report with the mode, the variables looked at and a list of errors
    """
    errors: List[str] = []
    raw_region = env.get("QSTASH_REGION")
    region = normalize_region(raw_region)

    if raw_region and region is None:
        errors.append(
            f"QSTASH_REGION is set to {raw_region!r}, expected one of {', '.join(SUPPORTED_REGIONS)}"
        )

    rows = _credential_rows(env)
    if region:
        mode = "multi-region"
        for supported in SUPPORTED_REGIONS:
            rows.update(_credential_rows(env, prefix=f"{supported}_"))
        if not env.get(f"{region}_QSTASH_TOKEN"):
            errors.append(f"{region}_QSTASH_TOKEN is not set for the primary region {region}")
    else:
        mode = "single-region"
        if not env.get("QSTASH_TOKEN"):
            errors.append("QSTASH_TOKEN is not set, publishing steps will fail")

    has_default_keys = bool(env.get("QSTASH_CURRENT_SIGNING_KEY") and env.get("QSTASH_NEXT_SIGNING_KEY"))
    has_region_keys = any(
        env.get(f"{supported}_QSTASH_CURRENT_SIGNING_KEY") and env.get(f"{supported}_QSTASH_NEXT_SIGNING_KEY")
        for supported in SUPPORTED_REGIONS
    )
    verification = has_default_keys or (region is not None and has_region_keys)

    return {
        "mode": mode,
        "region": region,
        "verification": verification,
        "variables": rows,
        "errors": errors,
    }


@click.command(name="env")
@click.pass_context
def env_command(ctx: click.Context) -> None:
    """
    Show the queue credentials and signing keys found in the environment.

    Secrets are masked. Exits with code 1 when the configuration is unusable.

    Examples:

        serveflow env

        QSTASH_REGION=us-east-1 serveflow --output json env
    """
    report = inspect_environment(os.environ)

    if ctx.obj and ctx.obj.get("output") == "json":
        format_json(report)
    else:
        print_info(f"Mode: {report['mode']}" + (f" (primary region {report['region']})" if report["region"] else ""))
        format_table(report["variables"], ["variable", "status", "value"], title="Environment")
        if report["verification"]:
            print_success("Request signature verification is enabled")
        else:
            print_warning("No signing keys found, request signatures will not be verified")

    for error in report["errors"]:
        print_error(error)
    if report["errors"]:
        raise click.exceptions.Exit(1)
