"""Release orchestration: artifacts, adapters, health, policy and the state machine."""

from relctl.release.artifacts import ArtifactStore, compute_ref
from relctl.release.engine import ReleaseEngine
from relctl.release.events import EventLog
from relctl.release.models import (
    DeploymentAttempt,
    Policy,
    Release,
    ReleaseStatus,
    Target,
)
from relctl.release.state import ReleaseState

__all__ = [
    "ArtifactStore",
    "compute_ref",
    "ReleaseEngine",
    "EventLog",
    "DeploymentAttempt",
    "Policy",
    "Release",
    "ReleaseStatus",
    "Target",
    "ReleaseState",
]
