"""Tests for the health prober."""

import pytest

from relctl.core.exceptions import TransportError
from relctl.release.health import HealthProber
from relctl.release.models import HealthVerdict, Policy, SampleStatus, Target, TargetKind

from conftest import FakeAdapter

H = SampleStatus.HEALTHY
U = SampleStatus.UNHEALTHY
N = SampleStatus.NO_RESPONSE


@pytest.fixture
def adapter(relctl_config) -> FakeAdapter:
    return FakeAdapter("web-slot", relctl_config.targets["web-slot"])


@pytest.fixture
def target() -> Target:
    return Target(id="web-slot", kind=TargetKind.SLOT)


@pytest.fixture
def prober(fake_clock) -> HealthProber:
    return HealthProber(sleep=fake_clock.sleep, clock=fake_clock)


class TestThreshold:
    """Consecutive-success counting."""

    @pytest.mark.asyncio
    async def test_healthy_after_threshold(self, prober, adapter, target):
        adapter.health = [H, H, H]
        result = await prober.check(adapter, target, Policy(threshold=3))

        assert result.verdict == HealthVerdict.HEALTHY
        assert result.consecutive_successes == 3
        assert len(result.samples) == 3

    @pytest.mark.asyncio
    async def test_unhealthy_sample_resets_streak(self, prober, adapter, target):
        # Two successes, one failure, then the full three again
        adapter.health = [H, H, U, H, H, H]
        result = await prober.check(adapter, target, Policy(threshold=3))

        assert result.verdict == HealthVerdict.HEALTHY
        assert len(result.samples) == 6

    @pytest.mark.asyncio
    async def test_no_response_resets_streak(self, prober, adapter, target):
        adapter.health = [H, N, H, H]
        result = await prober.check(adapter, target, Policy(threshold=2))

        assert result.verdict == HealthVerdict.HEALTHY
        assert len(result.samples) == 4

    @pytest.mark.asyncio
    async def test_polls_at_interval(self, prober, adapter, target, fake_clock):
        adapter.health = [U, H, H]
        await prober.check(adapter, target, Policy(threshold=2, interval=7))
        assert fake_clock.sleeps == [7, 7]


class TestFailure:
    """Unhealthy and timeout verdicts."""

    @pytest.mark.asyncio
    async def test_consecutive_failures(self, prober, adapter, target):
        adapter.health = [U, U, U]
        result = await prober.check(adapter, target, Policy(failure_threshold=3))

        assert result.verdict == HealthVerdict.UNHEALTHY
        assert result.consecutive_successes == 0

    @pytest.mark.asyncio
    async def test_interleaved_failures_do_not_add_up(self, prober, adapter, target):
        adapter.health = [U, U, N, U, U, H]
        result = await prober.check(adapter, target, Policy(failure_threshold=3))
        assert result.verdict == HealthVerdict.HEALTHY

    @pytest.mark.asyncio
    async def test_timeout(self, prober, adapter, target, fake_clock):
        adapter.default_health = N
        start = fake_clock.now
        result = await prober.check(adapter, target, Policy(timeout=30, interval=5))

        assert result.verdict == HealthVerdict.TIMEOUT
        assert fake_clock.now - start == 30
        assert len(result.samples) == 7

    @pytest.mark.asyncio
    async def test_warmup_before_first_probe(self, prober, adapter, target, fake_clock):
        await prober.check(adapter, target, Policy(warmup_seconds=20))
        assert fake_clock.sleeps[0] == 20


class TestTransportRetries:
    """Transient probe failures."""

    @pytest.mark.asyncio
    async def test_transport_error_retried(self, prober, adapter, target, fake_clock):
        adapter.health = [TransportError("reset"), H]
        result = await prober.check(
            adapter, target, Policy(max_retries=2, backoff_base_seconds=0.5)
        )

        assert result.verdict == HealthVerdict.HEALTHY
        assert len(result.samples) == 1
        assert fake_clock.sleeps == [0.5]

    @pytest.mark.asyncio
    async def test_exhausted_retries_record_no_response(self, prober, adapter, target):
        adapter.health = [TransportError("refused")] * 2 + [H]
        result = await prober.check(adapter, target, Policy(max_retries=1))

        assert result.samples[0].status == N
        assert "refused" in result.samples[0].detail
        assert result.verdict == HealthVerdict.HEALTHY


class TestBake:
    """Observation window after the threshold is met."""

    @pytest.mark.asyncio
    async def test_bake_passes(self, prober, adapter, target, fake_clock):
        start = fake_clock.now
        result = await prober.check(adapter, target, Policy(bake_seconds=20, interval=5))

        assert result.verdict == HealthVerdict.HEALTHY
        assert fake_clock.now - start == 20
        assert len(result.samples) == 5

    @pytest.mark.asyncio
    async def test_degradation_during_bake(self, prober, adapter, target):
        adapter.health = [H, H, U]
        result = await prober.check(adapter, target, Policy(bake_seconds=60, interval=5))

        assert result.verdict == HealthVerdict.UNHEALTHY
        assert len(result.samples) == 3
