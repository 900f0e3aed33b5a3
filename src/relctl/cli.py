"""Main CLI entry point for relctl."""

import sys
from typing import Any

import click
from rich.console import Console

from relctl import __version__
from relctl.config import ConfigLoader, RelCtlSettings
from relctl.core.context import RelCtlContext
from relctl.core.exceptions import ConfigError, RelCtlError
from relctl.core.output import OutputFormat


CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
    "max_content_width": 120,
}


class OutputFormatType(click.ParamType):
    """Custom Click parameter type for output format."""

    name = "format"

    def convert(
        self,
        value: Any,
        param: click.Parameter | None,
        ctx: click.Context | None,
    ) -> OutputFormat:
        if isinstance(value, OutputFormat):
            return value
        try:
            return OutputFormat(value.lower())
        except ValueError:
            self.fail(
                f"Invalid format '{value}'. Choose from: table, json, yaml, raw",
                param,
                ctx,
            )


OUTPUT_FORMAT = OutputFormatType()


def print_version(ctx: click.Context, param: click.Parameter, value: bool) -> None:
    """Print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    console = Console()
    console.print(f"relctl version {__version__}")
    ctx.exit()


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "-o",
    "--output",
    "output_format",
    type=OUTPUT_FORMAT,
    metavar="FORMAT",
    help="Output format: table, json, yaml, raw",
)
@click.option(
    "-v",
    "--verbose",
    count=True,
    help="Increase verbosity (-v for info, -vv for debug)",
)
@click.option(
    "-q",
    "--quiet",
    is_flag=True,
    help="Suppress non-essential output",
)
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would happen without making changes",
)
@click.option(
    "--no-color",
    is_flag=True,
    help="Disable colored output",
)
@click.option(
    "-c",
    "--config",
    "config_file",
    type=click.Path(exists=True),
    metavar="FILE",
    help="Path to config file (or RELCTL_CONFIG)",
)
@click.option(
    "--version",
    is_flag=True,
    callback=print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit",
)
@click.pass_context
def cli(
    ctx: click.Context,
    output_format: OutputFormat | None,
    verbose: int,
    quiet: bool,
    dry_run: bool,
    no_color: bool,
    config_file: str | None,
) -> None:
    """RelCtl - release orchestration for web hosts.

    Stages build artifacts onto slot-based PaaS hosts and remote web servers,
    verifies health, and promotes or rolls back.

    \b
    Examples:
        relctl artifact put build/site.zip --version 1.4.0
        relctl deploy web-staging sha256:3f5a... --commit 9c1e2d4
        relctl status
        relctl approve 1a2b3c4d

    \b
    Configuration:
        ~/.relctl/config.yaml    User configuration
        ./relctl.yaml            Project configuration
        RELCTL_*                 Environment variables
    """
    try:
        config = ConfigLoader().load(config_file, RelCtlSettings())

        ctx.obj = RelCtlContext(
            config=config,
            output_format=output_format,
            verbose=verbose,
            quiet=quiet,
            dry_run=dry_run,
            color=not no_color,
        )

        if dry_run and not quiet:
            ctx.obj.output.print_warning("Dry-run mode enabled - no changes will be made")

    except ConfigError as e:
        console = Console(stderr=True)
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


def register_commands() -> None:
    """Register all command groups."""
    from relctl.commands import release
    from relctl.commands.artifact import artifact

    cli.add_command(artifact)
    for command in (
        release.submit,
        release.run,
        release.deploy,
        release.status,
        release.targets,
        release.approve,
        release.reject,
        release.cancel,
        release.rollback,
        release.resume,
        release.events,
    ):
        cli.add_command(command)


register_commands()


@cli.command()
@click.pass_context
def config(ctx: click.Context) -> None:
    """Show current configuration."""
    relctl_ctx: RelCtlContext = ctx.obj
    cfg = relctl_ctx.config
    config_data = {
        "state_dir": cfg.global_settings.state_dir,
        "artifact_dir": cfg.global_settings.artifact_dir,
        "output_format": relctl_ctx.output_format.value,
        "dry_run": relctl_ctx.dry_run,
        "default_tier": cfg.policy.default_tier,
        "targets": ", ".join(sorted(cfg.targets)) or "-",
        "webhooks": len(cfg.notifications.webhooks),
    }
    relctl_ctx.output.print_data(config_data, title="Current Configuration")


def main() -> None:
    """Main entry point."""
    try:
        cli()
    except RelCtlError as e:
        console = Console(stderr=True)
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        console = Console(stderr=True)
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
