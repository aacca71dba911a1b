"""Click CLI for inspecting rate limit configuration and redacting log payloads."""

from __future__ import annotations

import json

import click

from woof_guard.ratelimit.policies import (
    InvalidPolicyError,
    load_policies,
    load_route_rules,
    matching_policies,
)


@click.group()
@click.option(
    "--routes", "routes_path", default="config/route-policies.json",
    help="Path to route policy rules JSON.",
)
@click.pass_context
def cli(ctx: click.Context, routes_path: str) -> None:
    """woof-guard rate limit and security tooling."""
    ctx.ensure_object(dict)
    ctx.obj["routes_path"] = routes_path
    try:
        ctx.obj["policies"] = load_policies()
    except InvalidPolicyError as exc:
        raise click.ClickException(str(exc)) from exc


@cli.command()
@click.pass_context
def policies(ctx: click.Context) -> None:
    """Print the effective policy catalog, including environment overrides."""
    output = [p.model_dump() for p in ctx.obj["policies"].values()]
    click.echo(json.dumps(output, indent=2))


@cli.command()
@click.pass_context
def routes(ctx: click.Context) -> None:
    """Validate the route rules file and print it."""
    try:
        rules = load_route_rules(ctx.obj["routes_path"], ctx.obj["policies"])
    except (InvalidPolicyError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps([r.model_dump() for r in rules], indent=2))


@cli.command()
@click.argument("method")
@click.argument("path")
@click.pass_context
def match(ctx: click.Context, method: str, path: str) -> None:
    """Show which policies gate METHOD PATH, in evaluation order."""
    try:
        rules = load_route_rules(ctx.obj["routes_path"], ctx.obj["policies"])
    except (InvalidPolicyError, FileNotFoundError) as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(json.dumps(matching_policies(rules, method, path)))


@cli.command()
@click.argument("source", type=click.File("r"), default="-")
def redact(source: click.utils.LazyFile) -> None:
    """Redact sensitive fields from a JSON document (file or stdin)."""
    from woof_guard.security.redaction import sanitize_object

    try:
        data = json.load(source)
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"Invalid JSON: {exc}") from exc
    click.echo(json.dumps(sanitize_object(data), indent=2))
