"""Target adapters."""

import httpx

from relctl.config import TargetConfig
from relctl.core.exceptions import ConfigError
from relctl.release.adapters.base import TargetAdapter
from relctl.release.adapters.remote import CommandRunner, RemoteMachineAdapter
from relctl.release.adapters.slot import SlotHostAdapter, SlotHostClient


def build_adapter(
    target_id: str,
    config: TargetConfig,
    health_client: httpx.AsyncClient | None = None,
) -> TargetAdapter:
    """Create the adapter for a target descriptor."""
    if config.kind == "slot":
        return SlotHostAdapter(target_id, config, health_client=health_client)
    if config.kind == "remote":
        return RemoteMachineAdapter(target_id, config, health_client=health_client)
    raise ConfigError(f"Unknown target kind: {config.kind}")


__all__ = [
    "TargetAdapter",
    "SlotHostAdapter",
    "SlotHostClient",
    "RemoteMachineAdapter",
    "CommandRunner",
    "build_adapter",
]
