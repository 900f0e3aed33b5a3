"""Core utilities and shared components for relctl."""

# Note: Import context lazily to avoid circular imports
# Use: from relctl.core.context import RelCtlContext, pass_context
from relctl.core.exceptions import (
    ConfigError,
    ConflictError,
    NotFoundError,
    RelCtlError,
    TransportError,
)
from relctl.core.output import OutputFormatter, console

__all__ = [
    "RelCtlError",
    "ConfigError",
    "ConflictError",
    "NotFoundError",
    "TransportError",
    "OutputFormatter",
    "console",
]
