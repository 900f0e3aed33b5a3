"""Pytest fixtures for relctl tests."""

import asyncio
from pathlib import Path

import pytest
from click.testing import CliRunner

from relctl.config import (
    GlobalConfig,
    PolicyConfig,
    RelCtlConfig,
    RemoteTargetConfig,
    SlotTargetConfig,
    TargetConfig,
    TierPolicyConfig,
)
from relctl.core.context import RelCtlContext
from relctl.core.exceptions import RollbackError
from relctl.core.output import OutputFormat
from relctl.release.adapters.base import TargetAdapter
from relctl.release.artifacts import ArtifactStore
from relctl.release.engine import ReleaseEngine
from relctl.release.events import EventLog
from relctl.release.models import (
    ActivationResult,
    HealthSample,
    SampleStatus,
    StagedHandle,
    Target,
)
from relctl.release.notify import Notifier
from relctl.release.state import ReleaseState


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        # Let other tasks (operators recording decisions) run
        await asyncio.sleep(0)


class FakeAdapter(TargetAdapter):
    """Scriptable in-memory target.

    ``health`` is consumed one entry per probe; an entry may be a
    SampleStatus or an exception to raise. Once exhausted, probes return
    ``default_health``. While ``probe_gate`` is set, probes block until the
    event fires.
    """

    def __init__(self, target_id: str, config: TargetConfig, atomic: bool = True):
        super().__init__(target_id, config)
        self._atomic = atomic
        self.live_ref: str | None = None
        self.staged_ref: str | None = None
        self.health: list = []
        self.default_health = SampleStatus.HEALTHY
        self.stage_errors: list[Exception] = []
        self.activate_errors: list[BaseException] = []
        self.rollback_error: Exception | None = None
        self.probe_gate: asyncio.Event | None = None
        self.calls: list[str] = []

    @property
    def atomic(self) -> bool:
        return self._atomic

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def stage(self, target: Target, artifact_ref: str, content: bytes) -> StagedHandle:
        self.calls.append("stage")
        if self.stage_errors:
            raise self.stage_errors.pop(0)
        self.staged_ref = artifact_ref
        return StagedHandle(target_id=target.id, artifact_ref=artifact_ref, location=f"fake:{artifact_ref[7:19]}")

    async def activate(self, target: Target, handle: StagedHandle) -> ActivationResult:
        self.calls.append("activate")
        if self.activate_errors:
            raise self.activate_errors.pop(0)
        previous = self.live_ref
        self.live_ref = handle.artifact_ref
        return ActivationResult(
            atomic=self._atomic,
            recovery_marker={"previous_artifact_ref": previous, "previous_path": previous},
            detail=f"activated {handle.artifact_ref[:19]}",
        )

    async def rollback(self, target: Target) -> ActivationResult:
        self.calls.append("rollback")
        if self.rollback_error:
            raise self.rollback_error
        marker = target.recovery_marker or {}
        previous = marker.get("previous_artifact_ref")
        if not previous:
            raise RollbackError("no recovery marker", target_id=target.id)
        self.live_ref = previous
        return ActivationResult(atomic=self._atomic, detail=f"restored {previous[:19]}")

    async def probe_health(self, target: Target, timeout: float) -> HealthSample:
        self.calls.append("probe")
        if self.probe_gate is not None:
            await self.probe_gate.wait()
        entry = self.health.pop(0) if self.health else self.default_health
        if isinstance(entry, BaseException):
            raise entry
        return HealthSample(status=entry)


@pytest.fixture
def cli_runner() -> CliRunner:
    """Create a Click CLI runner."""
    return CliRunner()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relctl_config(tmp_path: Path) -> RelCtlConfig:
    """Configuration with one target of each kind plus a gated production target."""
    return RelCtlConfig(
        global_settings=GlobalConfig(
            state_dir=str(tmp_path / "state"),
            artifact_dir=str(tmp_path / "artifacts"),
        ),
        targets={
            "web-slot": TargetConfig(
                kind="slot",
                tier="staging",
                health_url="https://web-slot.example.com/health",
                slot=SlotTargetConfig(base_url="https://paas.example.com/api", site="web"),
            ),
            "web-remote": TargetConfig(
                kind="remote",
                tier="development",
                health_url="http://web01.example.com/health",
                remote=RemoteTargetConfig(root=str(tmp_path / "share")),
            ),
            "web-prod": TargetConfig(
                kind="slot",
                tier="production",
                health_url="https://web-prod.example.com/health",
                slot=SlotTargetConfig(base_url="https://paas.example.com/api", site="web-prod"),
            ),
        },
        policy=PolicyConfig(
            tiers={
                "development": TierPolicyConfig(timeout=30),
                "staging": TierPolicyConfig(threshold=2),
                "production": TierPolicyConfig(
                    requires_manual_gate=True,
                    threshold=3,
                    bake_seconds=60,
                ),
            }
        ),
    )


@pytest.fixture
def fake_adapters(relctl_config: RelCtlConfig) -> dict[str, FakeAdapter]:
    return {
        "web-slot": FakeAdapter("web-slot", relctl_config.targets["web-slot"], atomic=True),
        "web-remote": FakeAdapter("web-remote", relctl_config.targets["web-remote"], atomic=False),
        "web-prod": FakeAdapter("web-prod", relctl_config.targets["web-prod"], atomic=True),
    }


def build_engine(
    config: RelCtlConfig,
    adapters: dict[str, TargetAdapter],
    clock: FakeClock,
    notifier: Notifier | None = None,
) -> ReleaseEngine:
    settings = config.global_settings
    return ReleaseEngine(
        config,
        state=ReleaseState(settings.state_dir),
        events=EventLog(settings.state_dir),
        artifacts=ArtifactStore(settings.artifact_dir),
        adapters=adapters,
        notifier=notifier,
        sleep=clock.sleep,
        clock=clock,
    )


@pytest.fixture
def engine(
    relctl_config: RelCtlConfig,
    fake_adapters: dict[str, FakeAdapter],
    fake_clock: FakeClock,
) -> ReleaseEngine:
    return build_engine(relctl_config, fake_adapters, fake_clock)


@pytest.fixture
def mock_context(relctl_config: RelCtlConfig) -> RelCtlContext:
    """Create a RelCtl context over temporary directories."""
    return RelCtlContext(
        config=relctl_config,
        output_format=OutputFormat.TABLE,
        verbose=0,
        quiet=False,
        dry_run=False,
        color=False,
    )
