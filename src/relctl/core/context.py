"""Click context object for sharing state across commands."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import click

from relctl.config import RelCtlConfig, get_default_config
from relctl.core.logging import LogLevel, StructuredLogger, setup_logging
from relctl.core.output import OutputFormat, OutputFormatter

if TYPE_CHECKING:
    from relctl.release.artifacts import ArtifactStore
    from relctl.release.engine import ReleaseEngine


class RelCtlContext:
    """Shared context object for relctl commands.

    This object is passed through Click's context mechanism and provides
    access to configuration, the release engine, and output utilities.
    """

    def __init__(
        self,
        config: RelCtlConfig | None = None,
        output_format: OutputFormat | None = None,
        verbose: int = 0,
        quiet: bool = False,
        dry_run: bool = False,
        color: bool = True,
    ):
        self._config = config or get_default_config()

        # Output settings (CLI overrides config)
        self._output_format = output_format or self._config.global_settings.output_format
        self._verbose = verbose
        self._quiet = quiet
        self._dry_run = dry_run
        self._color = color and self._config.global_settings.color != "never"

        if verbose >= 2:
            log_level = LogLevel.DEBUG
        elif verbose >= 1:
            log_level = LogLevel.INFO
        elif quiet:
            log_level = LogLevel.ERROR
        else:
            log_level = self._config.global_settings.verbosity

        setup_logging(log_level, rich_output=self._color)
        self._logger = StructuredLogger("context")

        self._output = OutputFormatter(
            format=self._output_format,
            color=self._color,
            quiet=quiet,
        )

        self._engine: ReleaseEngine | None = None

    @property
    def config(self) -> RelCtlConfig:
        """Get the loaded configuration."""
        return self._config

    @property
    def output(self) -> OutputFormatter:
        """Get the output formatter."""
        return self._output

    @property
    def output_format(self) -> OutputFormat:
        return self._output_format

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    @property
    def verbose(self) -> int:
        return self._verbose

    @property
    def quiet(self) -> bool:
        return self._quiet

    @property
    def logger(self) -> StructuredLogger:
        return self._logger

    @property
    def engine(self) -> ReleaseEngine:
        """Get or create the release engine."""
        if self._engine is None:
            from relctl.release.engine import ReleaseEngine

            self._engine = ReleaseEngine.from_config(self._config)
        return self._engine

    @property
    def artifacts(self) -> ArtifactStore:
        return self.engine.artifacts

    def confirm(self, message: str, default: bool = False) -> bool:
        """Ask for user confirmation.

        In dry-run mode, always returns True without prompting.
        """
        if self._dry_run:
            self._output.print(f"[dim][dry-run] Would prompt: {message}[/dim]")
            return True
        return self._output.confirm(message, default)

    def log_dry_run(self, action: str, details: dict[str, Any] | None = None) -> None:
        """Log a dry-run action."""
        if self._dry_run:
            msg = f"[dry-run] {action}"
            if details:
                detail_str = ", ".join(f"{k}={v}" for k, v in details.items())
                msg = f"{msg} ({detail_str})"
            self._output.print(f"[dim]{msg}[/dim]")


# Click decorator for passing context
pass_context = click.make_pass_decorator(RelCtlContext, ensure=True)
