"""Artifact command group."""

from pathlib import Path

import click

from relctl.core.context import RelCtlContext, pass_context
from relctl.core.exceptions import RelCtlError
from relctl.core.output import format_bytes


@click.group()
@pass_context
def artifact(ctx: RelCtlContext) -> None:
    """Artifact store - put, list, garbage-collect.

    \b
    Examples:
        relctl artifact put build/site.zip --version 1.4.0
        relctl artifact list
        relctl artifact gc
    """
    pass


@artifact.command("put")
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--version", "version", help="Version label for the artifact")
@click.option("-l", "--label", "labels", multiple=True, metavar="KEY=VALUE", help="Extra label")
@pass_context
def put(ctx: RelCtlContext, path: Path, version: str | None, labels: tuple[str, ...]) -> None:
    """Store a build output and print its reference.

    \b
    Examples:
        relctl artifact put build/site.zip --version 1.4.0 -l branch=main
    """
    parsed: dict[str, str] = {}
    for label in labels:
        key, sep, value = label.partition("=")
        if not sep:
            raise click.BadParameter(f"Expected KEY=VALUE, got '{label}'", param_hint="--label")
        parsed[key] = value

    try:
        ref = ctx.artifacts.put(
            path.read_bytes(),
            {"version": version, "filename": path.name, "labels": parsed},
        )
    except RelCtlError as e:
        ctx.output.print_error(f"Failed to store artifact: {e}")
        raise click.Abort()

    if ctx.quiet:
        click.echo(ref)
    else:
        ctx.output.print_success(f"Stored {path.name}")
        ctx.output.print(ref)


@artifact.command("list")
@pass_context
def list_artifacts(ctx: RelCtlContext) -> None:
    """List stored artifacts, newest first."""
    infos = ctx.artifacts.list_artifacts()
    data = [
        {
            "Ref": info.short,
            "Version": info.version or "-",
            "File": info.filename or "-",
            "Size": format_bytes(info.size),
            "Created": info.created_at.strftime("%Y-%m-%d %H:%M"),
        }
        for info in infos
    ]
    ctx.output.print_data(data, title="Artifacts")


@artifact.command("gc")
@pass_context
def gc(ctx: RelCtlContext) -> None:
    """Delete artifacts outside the retention window.

    Artifacts referenced by any target's live, staged or previous release
    are never deleted.
    """
    retention = ctx.config.retention
    if ctx.dry_run:
        ctx.log_dry_run(
            "garbage-collect artifacts",
            {"keep_last_n": retention.keep_last_n, "keep_min_age_days": retention.keep_min_age_days},
        )
        return

    try:
        removed = ctx.engine.collect_garbage()
    except RelCtlError as e:
        ctx.output.print_error(f"Garbage collection failed: {e}")
        raise click.Abort()

    if not removed:
        ctx.output.print_info("Nothing to collect")
        return

    for ref in removed:
        ctx.output.print(f"  removed {ref}")
    ctx.output.print_success(f"Removed {len(removed)} artifacts")
